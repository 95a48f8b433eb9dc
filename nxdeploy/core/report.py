# nxdeploy/core/report.py

from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path

from nxdeploy.core.deploy import TargetReport
from nxdeploy.core.io import atomic_write_text
from nxdeploy.core.types import TargetRef


def markdown_escape(text: str) -> str:
    return " ".join(str(text).splitlines()).replace("|", "\\|")


def _status_cell(passed: bool, ignored: bool) -> str:
    if passed:
        return "✓ pass"
    if ignored:
        return "~ ignored"
    return "✗ FAIL"


def render_target_section(report: TargetReport) -> str:
    failures = report.unignored_failures
    lines = [
        f"## `{report.target}`",
        "",
        f"Host: {markdown_escape(report.config.host_name)} "
        f"({markdown_escape(report.config.system)}), "
        f"{len(failures)} unignored failure(s)",
        "",
        "| Group | Check | Status | Message | Advice |",
        "|-------|-------|--------|---------|--------|",
    ]
    for group in report.results:
        for check in group.checks:
            message = str(check.failure) if check.failure else ""
            lines.append(
                f"| {markdown_escape(group.id)} | {markdown_escape(check.id)} "
                f"| {_status_cell(check.passed, check.ignored)} "
                f"| {markdown_escape(message)} "
                f"| {markdown_escape(check.advice) if not check.passed else ''} |"
            )
    return "\n".join(lines)


def render_check_report(reports: Mapping[TargetRef, TargetReport], now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    stamp = now.replace(microsecond=0).isoformat()
    parts = ["# nxdeploy Configuration Check Report", f"Generated: {stamp}", ""]
    for target in sorted(reports):
        parts.append(render_target_section(reports[target]))
        parts.append("")
    return "\n".join(parts)


def write_check_report(reports: Mapping[TargetRef, TargetReport], path: Path) -> Path:
    atomic_write_text(path, render_check_report(reports))
    return path
