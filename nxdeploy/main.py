#!/usr/bin/env python3
"""
nxdeploy - fleet deployment and compliance for NixOS configurations
===================================================================

CLI entry point that wires up:
* Logging & configuration
* Operator profile and nix collaborators
* Check gating, batched builds and per-host deployment
"""

from __future__ import annotations

# ── Standard library ────────────────────────────────────────────────────────
import contextlib
import json
import socket
from collections.abc import Iterator
from pathlib import Path
from typing import Annotated, Any

# ── Third-party ─────────────────────────────────────────────────────────────
import typer

# ── Local imports ───────────────────────────────────────────────────────────
from nxdeploy.checks.catalog import STANDARD_CHECKS
from nxdeploy.checks.ignore import IgnoreMap, load_ignore_file, parse_ignore_string, save_failing_checks
from nxdeploy.core import config as config_loader
from nxdeploy.core.deploy import Deployer, TargetReport
from nxdeploy.core.errors import (
    CheckGateFailure,
    EvaluationAborted,
    EvaluationError,
    HostnameMismatch,
    IgnoreFileError,
    IgnoreParseError,
    TargetRefParseError,
    UserInfoError,
)
from nxdeploy.core.health import generation_drift
from nxdeploy.core.logger import LoggerProxy, setup_logging
from nxdeploy.core.report import write_check_report
from nxdeploy.core.task import TargetOutcome
from nxdeploy.core.types import Reachable, TargetRef, parse_target
from nxdeploy.nix.builder import NixBuilder
from nxdeploy.nix.evaluator import NixEvaluator
from nxdeploy.nix.userinfo import collect_user_info

log = LoggerProxy(__name__)

# ── Typer CLI app ───────────────────────────────────────────────────────────
app = typer.Typer(
    help="nxdeploy - check, build and deploy NixOS configurations across a fleet.",
    add_completion=False,
)


# ── Option parsing ──────────────────────────────────────────────────────────
def _validate_targets(values: list[str] | None) -> list[str] | None:
    for value in values or []:
        try:
            parse_target(value)
        except TargetRefParseError as e:
            raise typer.BadParameter(str(e)) from e
    return values


def _validate_target(value: str | None) -> str | None:
    if value is not None:
        _validate_targets([value])
    return value


def _validate_ignore(value: str | None) -> str | None:
    if value:
        try:
            parse_ignore_string(value)
        except IgnoreParseError as e:
            raise typer.BadParameter(str(e)) from e
    return value


TargetsArg = Annotated[
    list[str] | None,
    typer.Argument(
        help="Configurations to act on ('.#host' or 'github:user/repo#host'). "
        "Defaults to every configuration of the default source.",
        callback=_validate_targets,
        show_default=False,
    ),
]
ConfigFileOpt = Annotated[
    Path | None,
    typer.Option(
        "--config-file",
        help="Path to JSON configuration file.",
        envvar=config_loader.CONFIG_ENV_VAR,
    ),
]
VerboseOpt = Annotated[
    bool, typer.Option("--verbose", "-v", help="Enable verbose (DEBUG) output.")
]
IgnoreOpt = Annotated[
    str | None,
    typer.Option(
        "--ignore",
        help="Comma-separated checks to ignore, e.g. 'server_optimization.doc_man,hardware_configuration.*'.",
        callback=_validate_ignore,
    ),
]
IgnoreFileOpt = Annotated[
    Path | None,
    typer.Option("--ignore-file", help="Ignore file (default from configuration)."),
]
IgnoreChecksOpt = Annotated[
    bool, typer.Option("--ignore-checks", help="Deploy even if configuration checks fail.")
]


# ── Helpers ─────────────────────────────────────────────────────────────────
def _bootstrap(config_file: Path | None, verbose: bool) -> dict[str, Any]:
    config = config_loader.load_config(config_loader.resolve_config_path(config_file))
    setup_logging(config, verbose=verbose)
    return config


def _make_deployer(config: dict[str, Any]) -> Deployer:
    deploy_cfg = config.get("deploy", {})
    return Deployer(
        NixEvaluator(),
        NixBuilder(),
        collect_user_info(),
        max_workers=deploy_cfg.get("max_workers", 8),
        switch_command=deploy_cfg.get("switch_command", "switch"),
        use_sudo=deploy_cfg.get("use_sudo", True),
        reboot_components=config.get("health", {}).get(
            "reboot_components", ["kernel", "initrd", "kernel-modules"]
        ),
    )


def _local_hostname() -> str:
    return socket.gethostname()


def _default_source(config: dict[str, Any]) -> str:
    return config.get("deploy", {}).get("default_source", ".")


def _targets(deployer: Deployer, config: dict[str, Any], values: list[str] | None) -> list[TargetRef]:
    source = _default_source(config)
    targets = deployer.resolve_targets([parse_target(v, source) for v in values or []], source)
    if not targets:
        typer.secho(f"No configurations found in {source}", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1)
    return targets


def _ignore_store(config: dict[str, Any], ignore_file: Path | None) -> tuple[Path, dict[str, IgnoreMap]]:
    path = ignore_file or Path(config.get("checks", {}).get("ignore_file", ".nxdeploy-ignore.yaml"))
    return path, load_ignore_file(path)


def _cli_ignores(value: str | None) -> IgnoreMap | None:
    return parse_ignore_string(value) if value else None


@contextlib.contextmanager
def _batch_errors() -> Iterator[None]:
    """Turn batch-fatal errors into a report on stderr and exit status 1."""
    try:
        yield
    except EvaluationAborted as e:
        typer.secho("Evaluation failed; nothing was built or deployed.", fg=typer.colors.RED, err=True)
        for target, error in e.errors.items():
            typer.secho(f"  ✗ {target} ({error.kind})", fg=typer.colors.RED, err=True)
            for line in error.message.strip().splitlines():
                typer.echo(f"      {line}", err=True)
        raise typer.Exit(code=1) from None
    except CheckGateFailure as e:
        typer.secho("Configuration checks failed; nothing was built or deployed.", fg=typer.colors.RED, err=True)
        for target, pairs in e.failures.items():
            typer.secho(f"  ✗ {target}", fg=typer.colors.RED, err=True)
            for group, check in pairs:
                typer.echo(f"      {group}.{check}", err=True)
        typer.echo("Use --ignore, an ignore file or --ignore-checks to proceed.", err=True)
        raise typer.Exit(code=1) from None
    except (HostnameMismatch, IgnoreFileError, UserInfoError, EvaluationError) as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from None


def _print_outcomes(outcomes: list[TargetOutcome], title: str) -> bool:
    typer.echo(f"\n{title}:")
    for outcome in outcomes:
        if outcome.success:
            typer.secho(f"  ✓ {outcome.target}", fg=typer.colors.GREEN, nl=False)
            typer.echo(f"  {outcome.summary}")
        else:
            typer.secho(f"  ✗ {outcome.target} ({outcome.summary})", fg=typer.colors.RED)
            if outcome.error is not None and outcome.error.detail:
                for line in outcome.error.detail.strip().splitlines()[-10:]:
                    typer.echo(f"      {line}")
    for outcome in outcomes:
        log.debug(json.dumps(outcome.as_dict()))
    ok = all(o.success for o in outcomes)
    log.info(f"Overall result: {'SUCCESS' if ok else 'FAILURE'}")
    return ok


def _print_report(report: TargetReport, verbose: bool) -> None:
    typer.secho(f"\n=== {report.target} ===", bold=True)
    for group in report.results:
        typer.echo(f"  {group.name} ({group.id})")
        for check in group.checks:
            if check.passed:
                if verbose:
                    typer.secho(f"    ✓ {check.id}", fg=typer.colors.GREEN)
                continue
            if check.ignored:
                typer.secho(f"    ~ {check.id} (ignored)", fg=typer.colors.YELLOW)
            else:
                typer.secho(f"    ✗ {check.id}", fg=typer.colors.RED)
            typer.echo(f"      {check.failure}")
            typer.echo(f"      advice: {check.advice}")


def _print_verbose_context(report: TargetReport) -> None:
    info = report.config
    typer.echo(f"Hostname: {info.fqdn_or_host_name or 'unknown'}")
    typer.echo(f"SSH Service: {'enabled' if info.ssh_enabled else 'disabled'}")
    typer.echo(f"Wheel group sudo: {'requires password' if info.wheel_needs_password else 'passwordless'}")
    typer.echo("Users with SSH access:")
    for user in info.users:
        if user.ssh_keys:
            wheel = " (wheel)" if "wheel" in user.extra_groups else ""
            typer.echo(f"  User: {user.name}{wheel}")
            for key in user.ssh_keys:
                typer.echo(f"    {key}")


# ── CLI commands ────────────────────────────────────────────────────────────
@app.command()
def build(
    targets: TargetsArg = None,
    config_file: ConfigFileOpt = None,
    verbose: VerboseOpt = False,
) -> None:
    """Build configurations locally without deploying them."""
    config = _bootstrap(config_file, verbose)
    with _batch_errors():
        deployer = _make_deployer(config)
        outcomes = deployer.build_targets(_targets(deployer, config, targets))
    ok = _print_outcomes(outcomes, "Build Summary")
    raise typer.Exit(code=0 if ok else 1)


@app.command(name="switch-remote")
def switch_remote(
    targets: TargetsArg = None,
    ignore_checks: IgnoreChecksOpt = False,
    ignore: IgnoreOpt = None,
    ignore_file: IgnoreFileOpt = None,
    reboot: Annotated[
        bool, typer.Option("--reboot", help="Reboot hosts whose kernel or initrd changed.")
    ] = False,
    config_file: ConfigFileOpt = None,
    verbose: VerboseOpt = False,
) -> None:
    """Deploy configurations to their remote hosts."""
    config = _bootstrap(config_file, verbose)
    with _batch_errors():
        deployer = _make_deployer(config)
        resolved = _targets(deployer, config, targets)
        _, store = _ignore_store(config, ignore_file)
        outcomes = deployer.switch_remote(
            resolved,
            ignore_store=store,
            cli_ignores=_cli_ignores(ignore),
            skip_checks=ignore_checks,
            reboot=reboot,
        )
    ok = _print_outcomes(outcomes, "Deployment Summary")
    raise typer.Exit(code=0 if ok else 1)


@app.command(name="switch-local")
def switch_local(
    target: Annotated[
        str | None,
        typer.Argument(
            help="Configuration to activate (defaults to <source>#<hostname>).",
            callback=_validate_target,
            show_default=False,
        ),
    ] = None,
    ignore_hostname: Annotated[
        bool, typer.Option("--ignore-hostname", help="Ignore hostname mismatch with the configuration.")
    ] = False,
    ignore_checks: IgnoreChecksOpt = False,
    ignore: IgnoreOpt = None,
    ignore_file: IgnoreFileOpt = None,
    config_file: ConfigFileOpt = None,
    verbose: VerboseOpt = False,
) -> None:
    """Build and activate a configuration on this machine."""
    config = _bootstrap(config_file, verbose)
    hostname = _local_hostname()
    source = _default_source(config)
    ref = parse_target(target, source) if target else TargetRef(source, hostname)
    typer.echo(f"Switching system: {ref}")
    with _batch_errors():
        deployer = _make_deployer(config)
        _, store = _ignore_store(config, ignore_file)
        outcome = deployer.switch_local(
            ref,
            hostname,
            ignore_store=store,
            cli_ignores=_cli_ignores(ignore),
            skip_checks=ignore_checks,
            ignore_hostname=ignore_hostname,
        )
    ok = _print_outcomes([outcome], "Deployment Summary")
    raise typer.Exit(code=0 if ok else 1)


@app.command()
def check(
    targets: TargetsArg = None,
    ignore: IgnoreOpt = None,
    ignore_file: IgnoreFileOpt = None,
    save_ignore: Annotated[
        bool, typer.Option("--save-ignore", help="Record current failures in the ignore file.")
    ] = False,
    report: Annotated[
        Path | None, typer.Option("--report", help="Write a Markdown report to this path.")
    ] = None,
    config_file: ConfigFileOpt = None,
    verbose: VerboseOpt = False,
) -> None:
    """Run configuration checks without building or deploying."""
    config = _bootstrap(config_file, verbose)
    with _batch_errors():
        deployer = _make_deployer(config)
        resolved = _targets(deployer, config, targets)
        store_path, store = _ignore_store(config, ignore_file)
        reports = deployer.check(resolved, store, _cli_ignores(ignore))

        if verbose:
            typer.echo(f"Current user: {deployer.user_info.username}")
            typer.echo("Loaded SSH keys in agent:")
            if not deployer.user_info.ssh_keys:
                typer.echo("  No SSH keys loaded in ssh-agent")
            for key in deployer.user_info.ssh_keys:
                typer.echo(f"  {key}")

        for target_report in reports.values():
            _print_report(target_report, verbose)
            if verbose:
                _print_verbose_context(target_report)

        if save_ignore:
            save_failing_checks(store_path, {t: r.results for t, r in reports.items()})
            typer.echo(f"\nIgnore file updated: {store_path}")

    if report is not None:
        write_check_report(reports, report)
        typer.echo(f"Report written to {report}")

    failing = [t for t, r in reports.items() if r.unignored_failures]
    typer.echo("\nCheck Summary:")
    for target in reports:
        if target in failing:
            count = len(reports[target].unignored_failures)
            typer.secho(f"  ✗ {target} ({count} failing check(s))", fg=typer.colors.RED)
        else:
            typer.secho(f"  ✓ {target}", fg=typer.colors.GREEN)
    raise typer.Exit(code=1 if failing else 0)


@app.command()
def checks() -> None:
    """List every available configuration check."""
    typer.echo("Available configuration checks:\n")
    for group in STANDARD_CHECKS:
        typer.secho(f"{group.name} ({group.id})", fg=typer.colors.CYAN, bold=True)
        typer.echo(f"  {group.description}\n")
        for item in group.checks:
            typer.echo(f"  {group.id}.{item.id}")
            typer.echo(f"    {item.description}")
            typer.echo(f"    advice: {item.advice}")
        typer.echo("")


@app.command()
def status(
    targets: TargetsArg = None,
    config_file: ConfigFileOpt = None,
    verbose: VerboseOpt = False,
) -> None:
    """Show generation, reboot and unit status of deployed hosts."""
    config = _bootstrap(config_file, verbose)
    with _batch_errors():
        deployer = _make_deployer(config)
        results = deployer.status(_targets(deployer, config, targets))

    for target, (info, current) in results.items():
        if not isinstance(current, Reachable):
            typer.secho(f"  ✗ {target} unreachable", fg=typer.colors.RED)
            continue
        drift = generation_drift(current, info)
        typer.secho(f"  ✓ {target}", fg=typer.colors.GREEN)
        typer.echo(f"      generation: {'drift' if drift else 'up to date'} ({current.current_generation})")
        typer.echo(f"      reboot required: {'yes' if current.needs_reboot else 'no'}")
        typer.echo(f"      failed units: {current.failed_unit_count}")
        typer.echo(f"      uptime: {current.uptime_seconds}s")
    raise typer.Exit(code=0)


@app.command(name="generate-config")
def generate_config_command(
    config_file: ConfigFileOpt = None,
    force: Annotated[bool, typer.Option("--force", help="Overwrite existing config file.")] = False,
) -> None:
    """Write a default config file (~/.config/nxdeploy/config.json)."""
    cfg_path = config_loader.resolve_config_path(config_file)
    if cfg_path.exists() and not force:
        typer.secho(f"Config already exists at {cfg_path} - use --force to overwrite.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    config_loader.generate_default_config(cfg_path, force=force)
    typer.echo(f"Default config written to {cfg_path}")


if __name__ == "__main__":
    app()
