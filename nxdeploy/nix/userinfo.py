# nxdeploy/nix/userinfo.py
from __future__ import annotations

import getpass
import json
import os
import re
from pathlib import Path
from typing import Any

from nxdeploy.core.command import run_command
from nxdeploy.core.errors import UserInfoError
from nxdeploy.core.logger import LoggerProxy
from nxdeploy.core.types import RemoteBuilder, SshKey, UserInfo

log = LoggerProxy(__name__)

_BUILDER_SEPARATOR = re.compile(r"[;\n]")


def parse_builders(spec: str) -> tuple[RemoteBuilder, ...]:
    """
    Parse a nix `builders` value into one RemoteBuilder per platform.

    Specs are separated by ';' or newlines. Field one is the SSH host and
    field two a comma-separated platform list; shorter specs are skipped.
    """
    builders: list[RemoteBuilder] = []
    for line in _BUILDER_SEPARATOR.split(spec):
        fields = line.split()
        if len(fields) < 2:
            continue
        host, platforms = fields[0], fields[1]
        for platform in platforms.split(","):
            if platform and platform != "-":
                builders.append(RemoteBuilder(host, platform))
    return tuple(builders)


def _read_builders(value: str) -> str:
    if not value.startswith("@"):
        return value
    path = Path(value[1:])
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise UserInfoError(f"Failed to read builders file {path}: {e}") from e


def _config_value(nix_config: dict[str, Any], key: str) -> Any:
    entry = nix_config.get(key)
    if isinstance(entry, dict):
        return entry.get("value")
    return entry


def _as_words(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str):
        return value.split()
    return []


def load_nix_config(nix: str = "nix") -> dict[str, Any]:
    result = run_command([nix, "show-config", "--json"], check=False)
    if result.io_error is not None:
        raise UserInfoError(f"Failed to execute nix show-config: {result.io_error}")
    if not result.success:
        raise UserInfoError(f"nix show-config failed: {result.stderr}")
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise UserInfoError(f"Failed to parse nix show-config output: {e}") from e
    if not isinstance(data, dict):
        raise UserInfoError("Unexpected nix show-config output")
    return data


def agent_keys() -> tuple[SshKey, ...]:
    """Public keys loaded in the SSH agent; empty when there is no agent."""
    result = run_command(["ssh-add", "-L"], check=False)
    if not result.success:
        log.debug("No SSH agent keys available.")
        return ()
    keys = (SshKey.from_authorized_key(line) for line in result.stdout.splitlines())
    return tuple(k for k in keys if k is not None)


def current_username() -> str:
    username = os.environ.get("USER")
    if username:
        return username
    try:
        return getpass.getuser()
    except (KeyError, OSError) as e:
        raise UserInfoError("Failed to determine the current username") from e


def collect_user_info(nix: str = "nix") -> UserInfo:
    """Collect the operator profile once per invocation."""
    nix_config = load_nix_config(nix)

    system = _config_value(nix_config, "system")
    if not isinstance(system, str) or not system:
        raise UserInfoError("system not found in nix config")

    builders_value = _config_value(nix_config, "builders") or ""
    remote_builders = parse_builders(_read_builders(str(builders_value)))

    info = UserInfo(
        username=current_username(),
        ssh_keys=agent_keys(),
        system=system,
        extra_platforms=tuple(_as_words(_config_value(nix_config, "extra-platforms"))),
        remote_builders=remote_builders,
    )
    log.debug(
        f"Operator {info.username}: system={info.system}, "
        f"{len(info.ssh_keys)} agent key(s), {len(info.remote_builders)} remote builder(s)"
    )
    return info
