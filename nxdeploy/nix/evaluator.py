# nxdeploy/nix/evaluator.py
"""Reads machine configurations out of a flake with `nix eval`."""

from __future__ import annotations

import json

from pydantic import ValidationError

from nxdeploy.core.command import CommandResult, run_command
from nxdeploy.core.errors import DeserializationFailed, EvaluationFailed, EvaluatorIOError
from nxdeploy.core.logger import LoggerProxy
from nxdeploy.core.types import ConfigInfo, TargetRef

log = LoggerProxy(__name__)

# Projects every attribute the check catalog and the deploy pipeline need.
CONFIG_INFO_EXPR = """{ config, pkgs, ... }:
let
  tryOrNull = x:
    let r = builtins.tryEval x;
    in if r.success then r.value else null;
in
{
  inherit (pkgs) system;
  users = map (user: {
    inherit (user) name extraGroups;
    sshKeys = user.openssh.authorizedKeys.keys or [];
  }) (builtins.filter
    (user: (user.isNormalUser or false))
    (builtins.attrValues config.users.users));

  amdMicrocode = config.hardware.cpu.amd.updateMicrocode;
  bootGrub = config.boot.loader.grub.enable;
  bootGrubGenerations = config.boot.loader.grub.configurationLimit;
  bootIsContainer = config.boot.isContainer;
  bootSystemd = config.boot.loader.systemd-boot.enable;
  bootSystemdGenerations = config.boot.loader.systemd-boot.configurationLimit;
  commandNotFound = config.programs.command-not-found.enable;
  docDevEnable = config.documentation.dev.enable;
  docDocEnable = config.documentation.doc.enable;
  docEnable = config.documentation.enable;
  docInfoEnable = config.documentation.info.enable;
  docManEnable = config.documentation.man.enable;
  docNixosEnabled = config.documentation.nixos.enable;
  fontFontconfigEnable = config.fonts.fontconfig.enable;
  fqdn = tryOrNull config.networking.fqdn;
  fqdnOrHostName = tryOrNull config.networking.fqdnOrHostName;
  hostName = config.networking.hostName;
  intelMicrocode = config.hardware.cpu.intel.updateMicrocode;
  isX86 = pkgs.stdenv.hostPlatform.isx86;
  journaldExtraConfig = config.services.journald.extraConfig;
  logRefusedConnections = config.networking.firewall.logRefusedConnections;
  networkingFirewallEnabled = config.networking.firewall.enable;
  nginxBrotli = config.services.nginx.recommendedBrotliSettings;
  nginxEnabled = config.services.nginx.enable;
  nginxGzip = config.services.nginx.recommendedGzipSettings;
  nginxOptimisation = config.services.nginx.recommendedOptimisation;
  nginxProxy = config.services.nginx.recommendedProxySettings;
  nginxTls = config.services.nginx.recommendedTlsSettings;
  nixAutoOptimiseStore = config.nix.settings.auto-optimise-store;
  nixExtraOptions = config.nix.extraOptions;
  nixGc = config.nix.gc.automatic;
  nixOptimiseAutomatic = config.nix.optimise.automatic;
  nixSettingsExperimentalFeatures = builtins.concatStringsSep " "
    (config.nix.settings.experimental-features or []);
  nixTrustsWheel = builtins.elem "@wheel" config.nix.settings.trusted-users;
  sshEnabled = config.services.openssh.enable;
  sshPasswordAuthentication = config.services.openssh.settings.PasswordAuthentication;
  stubLd = config.environment.stub-ld.enable;
  sudoEnabled = config.security.sudo.enable;
  sudoWheelOnly = config.security.sudo.execWheelOnly;
  toplevelDrv = config.system.build.toplevel.drvPath;
  toplevelOut = config.system.build.toplevel;
  usersMutable = config.users.mutableUsers;
  wheelNeedsPassword = config.security.sudo.wheelNeedsPassword;
}"""


def _raise_for_failure(result: CommandResult, what: str) -> None:
    if result.io_error is not None:
        raise EvaluatorIOError(f"Failed to execute nix eval for {what}: {result.io_error}")
    if not result.success:
        raise EvaluationFailed(result.stderr or f"nix eval exited with code {result.returncode}")


class NixEvaluator:
    """Evaluator backed by the `nix` command line."""

    def __init__(self, nix: str = "nix"):
        self.nix = nix

    def list_configuration_attributes(self, source: str) -> list[str]:
        cmd = [
            self.nix,
            "eval",
            "--json",
            f"{source}#nixosConfigurations",
            "--apply",
            "builtins.attrNames",
        ]
        result = run_command(cmd, check=False)
        _raise_for_failure(result, source)
        try:
            names = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise DeserializationFailed(f"{source}: {e}") from e
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise DeserializationFailed(f"{source}: expected a list of attribute names")
        return names

    def evaluate_configuration(self, target: TargetRef) -> ConfigInfo:
        log.debug(f"Evaluating {target}")
        cmd = [self.nix, "eval", "--json", target.installable, "--apply", CONFIG_INFO_EXPR]
        result = run_command(cmd, check=False)
        _raise_for_failure(result, str(target))
        try:
            return ConfigInfo.model_validate_json(result.stdout)
        except ValidationError as e:
            raise DeserializationFailed(f"{target}: {e}") from e
