from __future__ import annotations

import shlex
from collections.abc import Sequence

from nxdeploy.core.command import run_command
from nxdeploy.core.logger import LoggerProxy
from nxdeploy.core.types import ConfigInfo, Reachable, SystemStatus, Unreachable

log = LoggerProxy(__name__)

DEFAULT_REBOOT_COMPONENTS: tuple[str, ...] = ("kernel", "initrd", "kernel-modules")


def build_status_script(components: Sequence[str] = DEFAULT_REBOOT_COMPONENTS) -> str:
    """Shell routine printing key=value lines describing the running system."""
    lines = [
        "printf 'generation=%s\\n' \"$(readlink -f /run/current-system)\"",
        "printf 'failed_units=%s\\n' "
        "\"$(systemctl list-units --state=failed --no-legend --plain | wc -l)\"",
        "printf 'uptime=%s\\n' \"$(cut -d' ' -f1 /proc/uptime)\"",
    ]
    for component in components:
        quoted = shlex.quote(component)
        lines.append(
            f"printf 'booted.%s=%s\\n' {quoted} \"$(readlink -f /run/booted-system/{quoted})\""
        )
        lines.append(
            f"printf 'current.%s=%s\\n' {quoted} \"$(readlink -f /run/current-system/{quoted})\""
        )
    return "\n".join(lines) + "\n"


def parse_status_output(
    text: str, components: Sequence[str] = DEFAULT_REBOOT_COMPONENTS
) -> SystemStatus:
    """All-or-nothing: any missing or malformed field yields Unreachable."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()

    required = ["generation", "failed_units", "uptime"]
    for component in components:
        required += [f"booted.{component}", f"current.{component}"]
    missing = [key for key in required if key not in values]
    if missing:
        return Unreachable(f"missing fields: {', '.join(missing)}")

    generation = values["generation"]
    if not generation:
        return Unreachable("no current generation")

    try:
        failed_units = int(values["failed_units"])
        uptime_seconds = int(float(values["uptime"]))
    except ValueError:
        return Unreachable("malformed counters")
    if failed_units < 0 or uptime_seconds < 0:
        return Unreachable("malformed counters")

    needs_reboot = any(
        values[f"booted.{c}"] != values[f"current.{c}"] for c in components
    )
    return Reachable(
        current_generation=generation,
        needs_reboot=needs_reboot,
        uptime_seconds=uptime_seconds,
        failed_unit_count=failed_units,
    )


def check_status(
    host: str | None = None,
    reboot_components: Sequence[str] = DEFAULT_REBOOT_COMPONENTS,
) -> SystemStatus:
    """Query the local machine, or `host` over ssh. Never raises for an unhealthy host."""
    script = build_status_script(reboot_components)
    if host is None:
        cmd = ["sh", "-c", script]
    else:
        cmd = ["ssh", host, shlex.join(["sh", "-c", script])]

    result = run_command(cmd, check=False)
    where = host or "localhost"
    if not result.success:
        log.warning(f"Health query for {where} failed (RC={result.returncode})")
        return Unreachable(result.io_error or result.stderr or f"exit code {result.returncode}")

    status = parse_status_output(result.stdout, reboot_components)
    if isinstance(status, Unreachable):
        log.warning(f"Health query for {where} returned malformed output: {status.reason}")
    return status


def generation_drift(status: SystemStatus, config: ConfigInfo) -> bool | None:
    """True when the running generation is not the evaluated one; None if unknown."""
    if isinstance(status, Reachable):
        return status.current_generation != config.toplevel_out
    return None
