"""The fixed catalog of configuration checks.

Every check is a pure predicate over an evaluated configuration and the
local operator profile. It returns ``None`` when the check passes, or a
``CheckFailure`` describing what is wrong. Group and check ids are the
external vocabulary used by ignore directives and the ignore file.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from nxdeploy.core.types import ConfigInfo, UserInfo

MAX_GENERATIONS = 10


@dataclass(frozen=True)
class CheckFailure:
    label: str
    message: str

    def __str__(self) -> str:
        return f"{self.label}: {self.message}"


Predicate = Callable[[ConfigInfo, UserInfo], "CheckFailure | None"]


@dataclass(frozen=True)
class Check:
    id: str
    description: str
    advice: str
    predicate: Predicate

    def run(self, config: ConfigInfo, user_info: UserInfo) -> CheckFailure | None:
        return self.predicate(config, user_info)


@dataclass(frozen=True)
class CheckGroup:
    id: str
    name: str
    description: str
    checks: tuple[Check, ...]

    def find(self, check_id: str) -> Check | None:
        return next((c for c in self.checks if c.id == check_id), None)


def _require(attribute: str, label: str, message: str, expected: bool = True) -> Predicate:
    """Fail unless ``config.<attribute>`` equals ``expected``."""

    def predicate(config: ConfigInfo, _user: UserInfo) -> CheckFailure | None:
        if getattr(config, attribute) != expected:
            return CheckFailure(label, message)
        return None

    return predicate


def _server_only(attribute: str, label: str, message: str) -> Predicate:
    """Fail when a machine with an fqdn (a server) keeps ``attribute`` enabled."""

    def predicate(config: ConfigInfo, _user: UserInfo) -> CheckFailure | None:
        if config.fqdn is not None and getattr(config, attribute):
            return CheckFailure(label, message)
        return None

    return predicate


def _nginx_setting(attribute: str, message: str) -> Predicate:
    def predicate(config: ConfigInfo, _user: UserInfo) -> CheckFailure | None:
        if config.nginx_enabled and not getattr(config, attribute):
            return CheckFailure("Nginx Settings", message)
        return None

    return predicate


# ── remote_deployment ───────────────────────────────────────────────────────
def _user_access(config: ConfigInfo, user_info: UserInfo) -> CheckFailure | None:
    user = config.find_user(user_info.username)
    if user is None:
        return CheckFailure(
            "User Access", f"User '{user_info.username}' does not exist on target system"
        )
    if not any(key in user.ssh_keys for key in user_info.ssh_keys):
        return CheckFailure(
            "User Access",
            f"User '{user_info.username}' exists but none of their local SSH keys are authorized",
        )
    return None


def _user_in_wheel(config: ConfigInfo, user_info: UserInfo) -> CheckFailure | None:
    user = config.find_user(user_info.username)
    if user is None:
        return CheckFailure(
            "Wheel Group", f"User '{user_info.username}' does not exist on target system"
        )
    if "wheel" not in user.extra_groups:
        return CheckFailure("Wheel Group", f"User '{user_info.username}' is not in the wheel group")
    return None


# ── system_maintenance ──────────────────────────────────────────────────────
def _generations_limit(config: ConfigInfo, _user: UserInfo) -> CheckFailure | None:
    loaders = (
        (config.boot_systemd, config.boot_systemd_generations, "systemd-boot"),
        (config.boot_grub, config.boot_grub_generations, "GRUB"),
    )
    for enabled, limit, name in loaders:
        if not enabled:
            continue
        if limit is None:
            return CheckFailure(
                "Boot Generations",
                f"No {name} generation limit set. "
                "This may prevent old generations from being garbage collected",
            )
        if limit > MAX_GENERATIONS:
            return CheckFailure(
                "Boot Generations",
                f"Too many {name} generations kept ({limit}). "
                f"Consider reducing to {MAX_GENERATIONS} or less",
            )
    return None


def _store_optimisation(config: ConfigInfo, _user: UserInfo) -> CheckFailure | None:
    if config.boot_is_container:
        return None
    if not config.nix_optimise_automatic and not config.nix_auto_optimise_store:
        return CheckFailure(
            "Nix store optimisation",
            "Nix store optimisation is disabled. "
            "Set either `nix.settings.auto-optimise-store` or `nix.optimise.automatic`",
        )
    return None


def _journald_retention(config: ConfigInfo, _user: UserInfo) -> CheckFailure | None:
    extra = config.journald_extra_config
    if "SystemKeepFree=" in extra:
        return None
    if "SystemMaxUse=" in extra and "SystemMaxFileSize=" in extra:
        return None
    return CheckFailure(
        "Journald Limits",
        "No journald space limits configured. "
        "Set either 'SystemKeepFree' or both 'SystemMaxUse' and 'SystemMaxFileSize'",
    )


# ── nix_configuration ───────────────────────────────────────────────────────
def _experimental_features(config: ConfigInfo, _user: UserInfo) -> CheckFailure | None:
    features_line = next(
        (
            line
            for line in config.nix_extra_options.splitlines()
            if line.strip().startswith("experimental-features")
        ),
        "",
    )
    for feature in ("nix-command", "flakes"):
        if feature not in features_line and feature not in config.nix_settings_experimental_features:
            return CheckFailure(
                "Nix Features",
                f"Missing required nix feature '{feature}'. "
                "Add it to experimental-features in nix.extraOptions",
            )
    return None


# ── hardware_configuration ──────────────────────────────────────────────────
def _microcode(config: ConfigInfo, _user: UserInfo) -> CheckFailure | None:
    if config.is_x86 and not config.intel_microcode and not config.amd_microcode:
        return CheckFailure(
            "Microcode",
            "No CPU microcode updates enabled. Set either "
            "`hardware.cpu.intel.updateMicrocode` or `hardware.cpu.amd.updateMicrocode` to `true`",
        )
    return None


STANDARD_CHECKS: tuple[CheckGroup, ...] = (
    CheckGroup(
        "remote_deployment",
        "Remote Deployment Support",
        "Checks if the system has the required configuration to safely perform remote "
        "deployments. This avoids a lock-out after the deployment.",
        (
            Check(
                "ssh_enabled",
                "SSH service must be enabled",
                "Set `services.openssh.enable = true`",
                _require("ssh_enabled", "SSH", "SSH service is not enabled"),
            ),
            Check(
                "sudo_enabled",
                "Sudo must be available",
                "Set `security.sudo.enable = true`",
                _require("sudo_enabled", "Sudo", "Sudo is not enabled"),
            ),
            Check(
                "wheel_passwordless",
                "Wheel group should not require password for sudo",
                "Set `security.sudo.wheelNeedsPassword = false`",
                _require(
                    "wheel_needs_password",
                    "Sudo Password",
                    "Wheel group members need password for sudo",
                    expected=False,
                ),
            ),
            Check(
                "nix_trusts_wheel",
                "Wheel group must be trusted by Nix",
                "Add `@wheel` to `nix.settings.trusted-users`",
                _require("nix_trusts_wheel", "Nix Trust", "`wheel` group is not trusted by nix"),
            ),
            Check(
                "user_access",
                "Current user must have SSH access",
                "Add your SSH key to the user's authorized_keys",
                _user_access,
            ),
            Check(
                "user_in_wheel",
                "Current user must be in wheel group",
                "Add your user to the wheel group",
                _user_in_wheel,
            ),
        ),
    ),
    CheckGroup(
        "system_security",
        "System Security Settings",
        "Checks if critical system security settings are properly configured",
        (
            Check(
                "wheel_only",
                "Only wheel group members should be allowed to use sudo",
                "Set `security.sudo.execWheelOnly = true`",
                _require("sudo_wheel_only", "Sudo Wheel Only", "Users outside wheel group can use sudo"),
            ),
            Check(
                "ssh_password_authentication",
                "Password authentication should be disabled for SSH",
                "Set `services.openssh.settings.PasswordAuthentication = false`",
                _require(
                    "ssh_password_authentication",
                    "SSH Password Auth",
                    "SSH password authentication is enabled. Consider disabling it and "
                    "using only key-based authentication",
                    expected=False,
                ),
            ),
            Check(
                "users_immutable",
                "Users should be managed through NixOS configuration",
                "Set `users.mutableUsers = false`",
                _require(
                    "users_mutable",
                    "Mutable Users",
                    "Users can be modified outside of the NixOS configuration",
                    expected=False,
                ),
            ),
            Check(
                "firewall_enabled",
                "The system firewall should be enabled",
                "Set `networking.firewall.enable = true`",
                _require("networking_firewall_enabled", "Firewall", "System firewall is not enabled"),
            ),
            Check(
                "log_refused_connections",
                "Logging of refused connections should be off outside of firewall debugging, "
                "it floods the logs and buries important messages",
                "Set `networking.firewall.logRefusedConnections = false`",
                _require(
                    "log_refused_connections",
                    "Log refused connections",
                    "Logging of refused connections is enabled",
                    expected=False,
                ),
            ),
        ),
    ),
    CheckGroup(
        "system_maintenance",
        "System Maintenance Settings",
        "Checks if system maintenance and cleanup settings are properly configured",
        (
            Check(
                "system_generations_limit",
                "The retention of old system generations should be limited, as these are "
                "protected from garbage collection and consume disk space unnecessarily.",
                f"Set `boot.loader.systemd-boot.configurationLimit = {MAX_GENERATIONS}` or less "
                f"for systemd-boot, or `boot.loader.grub.configurationLimit = {MAX_GENERATIONS}` "
                "or less for GRUB",
                _generations_limit,
            ),
            Check(
                "nix_gc",
                "Regular Nix Garbage Collection should be enabled",
                "Set `nix.gc.automatic = true`",
                _require("nix_gc", "Garbage Collection", "Garbage Collection is not enabled"),
            ),
            Check(
                "nix_optimise_automatic",
                "Nix store optimisation should be enabled",
                "Set either `nix.settings.auto-optimise-store` or `nix.optimise.automatic`",
                _store_optimisation,
            ),
            Check(
                "journald_retention",
                "Journald should have disk space limits configured",
                "Add `SystemKeepFree=`, or both `SystemMaxUse=` and `SystemMaxFileSize=`, "
                "to `services.journald.extraConfig`",
                _journald_retention,
            ),
        ),
    ),
    CheckGroup(
        "nix_configuration",
        "Nix Configuration",
        "Checks if Nix is configured with recommended settings",
        (
            Check(
                "nix_extra_options",
                "Nix features should include nix-command and flakes",
                "Add 'nix-command flakes' to nix.settings.experimental-features",
                _experimental_features,
            ),
        ),
    ),
    CheckGroup(
        "server_optimization",
        "Server Optimization Settings",
        "Checks if server-specific optimizations are properly configured",
        (
            Check(
                "doc_nixos",
                "NixOS documentation should be disabled to reduce system closure size",
                "Set `documentation.nixos.enable = false`",
                _server_only("doc_nixos_enabled", "Documentation", "NixOS documentation enabled"),
            ),
            Check(
                "documentation",
                "General documentation should be disabled to reduce system closure size",
                "Set `documentation.enable = false`",
                _server_only("doc_enable", "Documentation", "General documentation enabled"),
            ),
            Check(
                "doc_dev",
                "Development documentation should be disabled to reduce system closure size",
                "Set `documentation.dev.enable = false`",
                _server_only("doc_dev_enable", "Documentation", "Development documentation enabled"),
            ),
            Check(
                "doc_doc",
                "Doc documentation should be disabled to reduce system closure size",
                "Set `documentation.doc.enable = false`",
                _server_only("doc_doc_enable", "Documentation", "Doc documentation enabled"),
            ),
            Check(
                "doc_info",
                "Info documentation should be disabled to reduce system closure size",
                "Set `documentation.info.enable = false`",
                _server_only("doc_info_enable", "Documentation", "Info documentation enabled"),
            ),
            Check(
                "doc_man",
                "Man pages should be disabled to reduce system closure size",
                "Set `documentation.man.enable = false`",
                _server_only("doc_man_enable", "Documentation", "Man pages enabled"),
            ),
            Check(
                "fontconfig",
                "Font configuration should be disabled on servers to reduce system closure size",
                "Set `fonts.fontconfig.enable = false`",
                _server_only(
                    "font_fontconfig_enable", "Font Configuration", "Font configuration is enabled"
                ),
            ),
            Check(
                "stub_ld",
                "Stub-ld is typically not needed on servers and increases system closure size",
                "Set `environment.stub-ld.enable = false`",
                _server_only("stub_ld", "Stub LD", "Stub-ld is enabled"),
            ),
            Check(
                "command_not_found",
                "The command-not-found program is typically not needed on servers and "
                "increases system closure size",
                "Set `programs.command-not-found.enable = false`",
                _server_only(
                    "command_not_found", "Command Not Found", "The command-not-found program is enabled"
                ),
            ),
            Check(
                "nginx_brotli",
                "Brotli compression should be enabled",
                "Set `services.nginx.recommendedBrotliSettings = true`",
                _nginx_setting("nginx_brotli", "Brotli compression not enabled"),
            ),
            Check(
                "nginx_gzip",
                "Gzip compression should be enabled",
                "Set `services.nginx.recommendedGzipSettings = true`",
                _nginx_setting("nginx_gzip", "Gzip compression not enabled"),
            ),
            Check(
                "nginx_optimisation",
                "Optimisation settings should be enabled",
                "Set `services.nginx.recommendedOptimisation = true`",
                _nginx_setting("nginx_optimisation", "Optimisation settings not enabled"),
            ),
            Check(
                "nginx_proxy",
                "Proxy settings should be enabled",
                "Set `services.nginx.recommendedProxySettings = true`",
                _nginx_setting("nginx_proxy", "Proxy settings not enabled"),
            ),
            Check(
                "nginx_tls",
                "TLS settings should be enabled",
                "Set `services.nginx.recommendedTlsSettings = true`",
                _nginx_setting("nginx_tls", "TLS settings not enabled"),
            ),
        ),
    ),
    CheckGroup(
        "hardware_configuration",
        "Hardware Configuration",
        "Checks if hardware-specific settings are properly configured",
        (
            Check(
                "cpu_microcode",
                "CPU microcode updates should be enabled on x86 machines",
                "Set either `hardware.cpu.intel.updateMicrocode` or "
                "`hardware.cpu.amd.updateMicrocode`",
                _microcode,
            ),
        ),
    ),
)


def find_group(group_id: str) -> CheckGroup | None:
    return next((g for g in STANDARD_CHECKS if g.id == group_id), None)
