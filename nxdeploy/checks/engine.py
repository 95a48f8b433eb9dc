from __future__ import annotations

from dataclasses import dataclass

from nxdeploy.checks.catalog import STANDARD_CHECKS, CheckFailure, CheckGroup
from nxdeploy.checks.ignore import IgnoreMap
from nxdeploy.core.logger import LoggerProxy
from nxdeploy.core.types import ConfigInfo, UserInfo

log = LoggerProxy(__name__)


@dataclass(frozen=True)
class CheckResult:
    id: str
    description: str
    advice: str
    passed: bool
    ignored: bool = False
    failure: CheckFailure | None = None


@dataclass(frozen=True)
class CheckGroupResult:
    id: str
    name: str
    description: str
    checks: tuple[CheckResult, ...]

    @property
    def failing(self) -> tuple[CheckResult, ...]:
        return tuple(c for c in self.checks if not c.passed)

    @property
    def unignored_failures(self) -> tuple[CheckResult, ...]:
        return tuple(c for c in self.checks if not c.passed and not c.ignored)


def run_all_checks(
    config: ConfigInfo,
    user_info: UserInfo,
    ignore_map: IgnoreMap | None = None,
    catalog: tuple[CheckGroup, ...] = STANDARD_CHECKS,
) -> list[CheckGroupResult]:
    """
    Run every check of the catalog in catalog order.

    A check is marked ignored only when it failed and the ignore map
    suppresses it. Passing checks are never ignored.
    """
    results: list[CheckGroupResult] = []
    for group in catalog:
        check_results = []
        for check in group.checks:
            failure = check.run(config, user_info)
            passed = failure is None
            ignored = (
                not passed and ignore_map is not None and ignore_map.suppresses(group.id, check.id)
            )
            if not passed:
                log.debug(
                    f"{config.host_name}: {group.id}.{check.id} failed"
                    + (" (ignored)" if ignored else "")
                    + f": {failure}"
                )
            check_results.append(
                CheckResult(
                    id=check.id,
                    description=check.description,
                    advice=check.advice,
                    passed=passed,
                    ignored=ignored,
                    failure=failure,
                )
            )
        results.append(
            CheckGroupResult(group.id, group.name, group.description, tuple(check_results))
        )
    return results


def failing_checks(results: list[CheckGroupResult]) -> list[tuple[str, str]]:
    """(group id, check id) of every failing check, ignored or not."""
    return [(group.id, check.id) for group in results for check in group.failing]


def unignored_failures(results: list[CheckGroupResult]) -> list[tuple[str, str]]:
    """(group id, check id) of every failing check that is not ignored."""
    return [(group.id, check.id) for group in results for check in group.unignored_failures]


def run_system_checks(
    config: ConfigInfo,
    user_info: UserInfo,
    ignore_map: IgnoreMap | None = None,
) -> list[tuple[str, str]]:
    """Run the catalog and return only the unignored failures."""
    return unignored_failures(run_all_checks(config, user_info, ignore_map))
