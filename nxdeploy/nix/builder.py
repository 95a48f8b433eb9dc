# nxdeploy/nix/builder.py
"""Builds, copies and activates system closures with the nix tooling."""

from __future__ import annotations

import json
import shutil
from collections.abc import Sequence

from nxdeploy.core.command import CommandResult, run_command
from nxdeploy.core.errors import (
    ActivateError,
    BuildError,
    PipelineError,
    RebootError,
    SwitchError,
    TransferError,
)
from nxdeploy.core.logger import LoggerProxy
from nxdeploy.core.types import TargetRef

log = LoggerProxy(__name__)

SYSTEM_PROFILE = "/nix/var/nix/profiles/system"


def _ensure_ok(result: CommandResult, error: type[PipelineError], message: str) -> None:
    if result.io_error is not None:
        raise error(message, result.io_error)
    if not result.success:
        raise error(message, result.stderr)


def _prefix(host: str | None, use_sudo: bool) -> list[str]:
    cmd: list[str] = []
    if host is not None:
        cmd += ["ssh", host]
    if use_sudo:
        cmd.append("sudo")
    return cmd


def _parse_build_output(stdout: str) -> list[str]:
    try:
        entries = json.loads(stdout) if stdout else []
    except json.JSONDecodeError as e:
        raise BuildError("Could not parse build output", str(e)) from e
    paths = []
    for entry in entries if isinstance(entries, list) else []:
        out = entry.get("outputs", {}).get("out") if isinstance(entry, dict) else None
        if isinstance(out, str):
            paths.append(out)
    return paths


class NixBuilder:
    """Builder/activator backed by `nix`, `nom` and `ssh`."""

    def __init__(self, nix: str = "nix", use_nom: bool | None = None):
        self.nix = nix
        self.use_nom = shutil.which("nom") is not None if use_nom is None else use_nom

    def realize_output_paths(self, targets: Sequence[TargetRef]) -> list[str]:
        """Build every target's toplevel in one invocation; returns the output paths."""
        if not targets:
            return []
        cmd = ["nom", "build", "--no-link"] if self.use_nom else [self.nix, "build", "--no-link"]
        cmd.append("--json")
        cmd += [t.toplevel_installable for t in targets]
        names = ", ".join(str(t) for t in targets)
        result = run_command(cmd, stream_stderr=True)
        _ensure_ok(result, BuildError, f"Build failed for {names}")
        return _parse_build_output(result.stdout)

    def realize_request_remotely(self, request: str, host: str) -> str:
        result = run_command(["ssh", host, "nix-store", "--realise", request])
        _ensure_ok(result, BuildError, f"Remote realisation of {request} failed on {host}")
        path = next((line.strip() for line in result.stdout.splitlines() if line.strip()), "")
        if not path:
            raise BuildError(f"Remote realisation on {host} returned no output path")
        return path

    def transfer(self, path: str, host: str) -> None:
        result = run_command(
            [self.nix, "copy", "--substitute-on-destination", "--to", f"ssh://{host}", path]
        )
        _ensure_ok(result, TransferError, f"Could not copy {path} to {host}")

    def activate(self, path: str, use_sudo: bool, host: str | None = None) -> None:
        cmd = _prefix(host, use_sudo) + ["nix-env", "-p", SYSTEM_PROFILE, "--set", path]
        result = run_command(cmd)
        _ensure_ok(result, ActivateError, f"Could not set system profile to {path}")

    def switch_configuration(
        self, path: str, command: str, use_sudo: bool, host: str | None = None
    ) -> None:
        cmd = _prefix(host, use_sudo) + [f"{path}/bin/switch-to-configuration", command]
        result = run_command(cmd, stream_stderr=True)
        _ensure_ok(result, SwitchError, f"switch-to-configuration {command} failed")

    def reboot(self, host: str) -> None:
        result = run_command(["ssh", host, "sudo", "systemctl", "reboot"], check=False)
        # The connection may drop while the host goes down.
        if result.io_error is not None or result.returncode not in (0, 255):
            raise RebootError(f"Could not reboot {host}", result.io_error or result.stderr)
