# nxdeploy/core/types.py
from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from nxdeploy.core.errors import TargetRefParseError

LOCAL_SOURCE = "."


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class TargetRef:
    """One machine configuration: `<source>#<attribute>`."""

    source: str
    attribute: str

    @classmethod
    def parse(cls, text: str, default_source: str = LOCAL_SOURCE) -> TargetRef:
        parts = text.split("#")
        if len(parts) > 2:
            raise TargetRefParseError(text)
        if len(parts) == 1:
            return cls(default_source, parts[0])
        source, attribute = parts
        return cls(source or default_source, attribute)

    @property
    def installable(self) -> str:
        return f'{self.source}#nixosConfigurations."{self.attribute}"'

    @property
    def toplevel_installable(self) -> str:
        return f"{self.installable}.config.system.build.toplevel"

    def __str__(self) -> str:
        return f"{self.source}#{self.attribute}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TargetRef):
            return NotImplemented
        return str(self) == str(other)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, TargetRef):
            return NotImplemented
        return str(self) < str(other)

    def __hash__(self) -> int:
        return hash(str(self))


def parse_target(text: str, default_source: str = LOCAL_SOURCE) -> TargetRef:
    return TargetRef.parse(text, default_source)


@dataclass(frozen=True)
class SshKey:
    key_type: str
    key_data: str
    comment: str = field(default="", compare=False)

    @classmethod
    def from_authorized_key(cls, line: str) -> SshKey | None:
        parts = line.split()
        if len(parts) < 2:
            return None
        return cls(parts[0], parts[1], parts[2] if len(parts) > 2 else "")

    def __str__(self) -> str:
        if self.comment:
            return f"{self.key_type} {self.key_data} {self.comment}"
        return f"{self.key_type} {self.key_data}"


@dataclass(frozen=True)
class RemoteBuilder:
    ssh_host: str
    platform: str


@dataclass(frozen=True)
class UserInfo:
    """The local operator: identity, agent keys and build capabilities."""

    username: str
    ssh_keys: tuple[SshKey, ...] = ()
    system: str = ""
    extra_platforms: tuple[str, ...] = ()
    remote_builders: tuple[RemoteBuilder, ...] = ()

    def can_build_natively(self, platform: str) -> bool:
        return (
            platform == self.system
            or platform in self.extra_platforms
            or any(rb.platform == platform for rb in self.remote_builders)
        )


# ── Evaluated configuration snapshot ────────────────────────────────────────
class _Evaluated(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class NixUser(_Evaluated):
    name: str
    extra_groups: tuple[str, ...] = ()
    ssh_keys: tuple[SshKey, ...] = ()

    @field_validator("ssh_keys", mode="before")
    @classmethod
    def _parse_keys(cls, value: Any) -> Any:
        if not isinstance(value, (list, tuple)):
            return value
        keys = []
        for item in value:
            if isinstance(item, str):
                key = SshKey.from_authorized_key(item)
                if key is not None:
                    keys.append(key)
            else:
                keys.append(item)
        return tuple(keys)


class ConfigInfo(_Evaluated):
    """Read-only snapshot of one target's declared configuration."""

    system: str
    host_name: str
    fqdn: str | None
    fqdn_or_host_name: str | None
    users: tuple[NixUser, ...]

    # remote deployment
    ssh_enabled: bool
    sudo_enabled: bool
    wheel_needs_password: bool
    nix_trusts_wheel: bool

    # security
    sudo_wheel_only: bool
    ssh_password_authentication: bool
    users_mutable: bool
    networking_firewall_enabled: bool
    log_refused_connections: bool

    # maintenance
    boot_systemd: bool
    boot_systemd_generations: int | None
    boot_grub: bool
    boot_grub_generations: int | None
    boot_is_container: bool
    nix_gc: bool
    nix_optimise_automatic: bool
    nix_auto_optimise_store: bool
    journald_extra_config: str

    # nix
    nix_extra_options: str
    nix_settings_experimental_features: str

    # server profile
    doc_nixos_enabled: bool
    doc_enable: bool
    doc_dev_enable: bool
    doc_doc_enable: bool
    doc_info_enable: bool
    doc_man_enable: bool
    font_fontconfig_enable: bool
    stub_ld: bool
    command_not_found: bool
    nginx_enabled: bool
    nginx_brotli: bool
    nginx_gzip: bool
    nginx_optimisation: bool
    nginx_proxy: bool
    nginx_tls: bool

    # hardware
    is_x86: bool
    intel_microcode: bool
    amd_microcode: bool

    # build artifacts
    toplevel_out: str
    toplevel_drv: str

    @property
    def deploy_host(self) -> str | None:
        """Host name used to reach the machine over SSH, if one is declared."""
        return self.fqdn_or_host_name or None

    def find_user(self, name: str) -> NixUser | None:
        return next((u for u in self.users if u.name == name), None)


# ── Health ──────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Reachable:
    current_generation: str
    needs_reboot: bool
    uptime_seconds: int
    failed_unit_count: int


@dataclass(frozen=True)
class Unreachable:
    reason: str = ""


SystemStatus: TypeAlias = Reachable | Unreachable
