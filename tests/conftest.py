from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import pytest

from nxdeploy.core.deploy import Deployer
from nxdeploy.core.errors import EvaluationError, PipelineError
from nxdeploy.core.types import (
    ConfigInfo,
    Reachable,
    RemoteBuilder,
    SshKey,
    SystemStatus,
    TargetRef,
    UserInfo,
)

OPERATOR_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOperatorKey alice@laptop"


def _healthy_config(host_name: str) -> dict[str, Any]:
    """A configuration that passes every check in the catalog."""
    return {
        "system": "x86_64-linux",
        "host_name": host_name,
        "fqdn": None,
        "fqdn_or_host_name": host_name,
        "users": [
            {"name": "alice", "extra_groups": ["wheel"], "ssh_keys": [OPERATOR_KEY]},
        ],
        "ssh_enabled": True,
        "sudo_enabled": True,
        "wheel_needs_password": False,
        "nix_trusts_wheel": True,
        "sudo_wheel_only": True,
        "ssh_password_authentication": False,
        "users_mutable": False,
        "networking_firewall_enabled": True,
        "log_refused_connections": False,
        "boot_systemd": True,
        "boot_systemd_generations": 10,
        "boot_grub": False,
        "boot_grub_generations": None,
        "boot_is_container": False,
        "nix_gc": True,
        "nix_optimise_automatic": True,
        "nix_auto_optimise_store": False,
        "journald_extra_config": "SystemKeepFree=2G",
        "nix_extra_options": "",
        "nix_settings_experimental_features": "nix-command flakes",
        "doc_nixos_enabled": False,
        "doc_enable": False,
        "doc_dev_enable": False,
        "doc_doc_enable": False,
        "doc_info_enable": False,
        "doc_man_enable": False,
        "font_fontconfig_enable": False,
        "stub_ld": False,
        "command_not_found": False,
        "nginx_enabled": False,
        "nginx_brotli": False,
        "nginx_gzip": False,
        "nginx_optimisation": False,
        "nginx_proxy": False,
        "nginx_tls": False,
        "is_x86": True,
        "intel_microcode": True,
        "amd_microcode": False,
        "toplevel_out": f"/nix/store/{host_name}-nixos-system",
        "toplevel_drv": f"/nix/store/{host_name}-nixos-system.drv",
    }


@pytest.fixture
def make_config():
    def factory(host_name: str = "web1", **overrides: Any) -> ConfigInfo:
        return ConfigInfo(**{**_healthy_config(host_name), **overrides})

    return factory


@pytest.fixture
def user_info() -> UserInfo:
    return UserInfo(
        username="alice",
        ssh_keys=(SshKey.from_authorized_key(OPERATOR_KEY),),
        system="x86_64-linux",
        extra_platforms=("i686-linux",),
        remote_builders=(RemoteBuilder("builder.example.org", "aarch64-linux"),),
    )


class FakeEvaluator:
    """Serves canned configurations and records every request."""

    def __init__(self) -> None:
        self.configs: dict[TargetRef, ConfigInfo] = {}
        self.errors: dict[TargetRef, EvaluationError] = {}
        self.attributes: dict[str, list[str]] = {}
        self.calls: list[Any] = []

    def add(self, target: TargetRef, config: ConfigInfo) -> TargetRef:
        self.configs[target] = config
        return target

    def list_configuration_attributes(self, source: str) -> list[str]:
        self.calls.append(("list", source))
        return self.attributes.get(source, [])

    def evaluate_configuration(self, target: TargetRef) -> ConfigInfo:
        self.calls.append(("evaluate", target))
        if target in self.errors:
            raise self.errors[target]
        return self.configs[target]


class FakeBuilder:
    """Records every builder call; `failures[(step, host)]` makes a step raise."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.failures: dict[tuple[str, str | None], Exception] = {}

    def _record(self, step: str, host: str | None, *args: Any) -> None:
        self.calls.append((step, host, *args))
        error = self.failures.get((step, host))
        if error is not None:
            raise error

    def realize_output_paths(self, targets: Sequence[TargetRef]) -> list[str]:
        self._record("build", None, tuple(targets))
        return []

    def realize_request_remotely(self, request: str, host: str) -> str:
        self._record("realize", host, request)
        return request.removesuffix(".drv")

    def transfer(self, path: str, host: str) -> None:
        self._record("transfer", host, path)

    def activate(self, path: str, use_sudo: bool, host: str | None = None) -> None:
        self._record("activate", host, path, use_sudo)

    def switch_configuration(
        self, path: str, command: str, use_sudo: bool, host: str | None = None
    ) -> None:
        self._record("switch", host, path, command, use_sudo)

    def reboot(self, host: str) -> None:
        self._record("reboot", host)

    def steps(self, host: str | None) -> list[str]:
        return [call[0] for call in self.calls if call[1] == host]


class FakeProbe:
    def __init__(self) -> None:
        self.statuses: dict[str | None, SystemStatus] = {}
        self.calls: list[str | None] = []

    def __call__(self, host: str | None) -> SystemStatus:
        self.calls.append(host)
        return self.statuses.get(
            host,
            Reachable(
                current_generation="/nix/store/current",
                needs_reboot=False,
                uptime_seconds=3600,
                failed_unit_count=0,
            ),
        )


@pytest.fixture
def evaluator() -> FakeEvaluator:
    return FakeEvaluator()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def deployer(evaluator, builder, probe, user_info) -> Deployer:
    return Deployer(evaluator, builder, user_info, max_workers=4, status_probe=probe)
