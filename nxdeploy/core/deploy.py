# nxdeploy/core/deploy.py
"""
Multi-target deployment orchestration.

Every invocation runs in two phases. The first phase evaluates all targets
and runs the check gate; it has no side effects and aborts the whole batch
on any evaluation error or unignored check failure. The second phase builds,
transfers, activates and switches each target independently, folding
per-target failures into that target's outcome.
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Protocol, TypeVar

from nxdeploy.checks.engine import CheckGroupResult, run_all_checks, unignored_failures
from nxdeploy.checks.ignore import IgnoreMap, merge_ignore_maps
from nxdeploy.core.errors import (
    BuildError,
    CheckGateFailure,
    EvaluationAborted,
    EvaluationError,
    HostnameMismatch,
    NoHostNameError,
    PipelineError,
    RebootError,
)
from nxdeploy.core.health import DEFAULT_REBOOT_COMPONENTS, check_status
from nxdeploy.core.logger import LoggerProxy
from nxdeploy.core.task import Severity, TargetOutcome
from nxdeploy.core.types import (
    LOCAL_SOURCE,
    ConfigInfo,
    Reachable,
    SystemStatus,
    TargetRef,
    Unreachable,
    UserInfo,
)

log = LoggerProxy(__name__)

T = TypeVar("T")
R = TypeVar("R")

StatusProbe = Callable[[str | None], SystemStatus]


class Evaluator(Protocol):
    def list_configuration_attributes(self, source: str) -> list[str]: ...

    def evaluate_configuration(self, target: TargetRef) -> ConfigInfo: ...


class Builder(Protocol):
    def realize_output_paths(self, targets: Sequence[TargetRef]) -> list[str]: ...

    def realize_request_remotely(self, request: str, host: str) -> str: ...

    def transfer(self, path: str, host: str) -> None: ...

    def activate(self, path: str, use_sudo: bool, host: str | None = None) -> None: ...

    def switch_configuration(
        self, path: str, command: str, use_sudo: bool, host: str | None = None
    ) -> None: ...

    def reboot(self, host: str) -> None: ...


@dataclass(frozen=True)
class TargetReport:
    """Check results for one evaluated target."""

    target: TargetRef
    config: ConfigInfo
    results: tuple[CheckGroupResult, ...]

    @property
    def unignored_failures(self) -> list[tuple[str, str]]:
        return unignored_failures(list(self.results))


class Deployer:
    def __init__(
        self,
        evaluator: Evaluator,
        builder: Builder,
        user_info: UserInfo,
        *,
        max_workers: int = 8,
        switch_command: str = "switch",
        use_sudo: bool = True,
        status_probe: StatusProbe | None = None,
        reboot_components: Sequence[str] = DEFAULT_REBOOT_COMPONENTS,
    ):
        self.evaluator = evaluator
        self.builder = builder
        self.user_info = user_info
        self.max_workers = max_workers
        self.switch_command = switch_command
        self.use_sudo = use_sudo
        self.status_probe: StatusProbe = status_probe or functools.partial(
            check_status, reboot_components=tuple(reboot_components)
        )

    # ── Concurrency ─────────────────────────────────────────────────────────
    def _fan_out(self, fn: Callable[[T], R], items: Iterable[T]) -> list[tuple[T, Future[R]]]:
        """Run `fn` over `items` on a bounded pool; return (item, future) pairs in completion order."""
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(fn, item): item for item in items}
            try:
                return [(futures[future], future) for future in as_completed(futures)]
            except BaseException:
                pool.shutdown(wait=False, cancel_futures=True)
                raise

    @staticmethod
    def _unexpected(target: TargetRef, error: Exception) -> TargetOutcome:
        log.error(f"[{target}] unexpected error: {error}", exc_info=error)
        return TargetOutcome.failed(target, PipelineError(f"unexpected error: {error}"))

    @staticmethod
    def _record(outcome: TargetOutcome) -> None:
        for severity, message in outcome.messages:
            getattr(log, severity.log_method())(f"[{outcome.target}] {message}")
        log.info(str(outcome))

    # ── Phase one: no side effects ──────────────────────────────────────────
    def resolve_targets(
        self, targets: Sequence[TargetRef], default_source: str = LOCAL_SOURCE
    ) -> list[TargetRef]:
        if targets:
            return sorted(set(targets))
        names = self.evaluator.list_configuration_attributes(default_source)
        log.info(f"Discovered {len(names)} configuration(s) in {default_source}")
        return sorted(TargetRef(default_source, name) for name in names)

    def evaluate_all(self, targets: Sequence[TargetRef]) -> dict[TargetRef, ConfigInfo]:
        """Evaluate every target; raise EvaluationAborted if any of them fails."""
        configs: dict[TargetRef, ConfigInfo] = {}
        errors: dict[TargetRef, EvaluationError] = {}
        for target, future in self._fan_out(self.evaluator.evaluate_configuration, targets):
            try:
                configs[target] = future.result()
                log.debug(f"Evaluated {target}")
            except EvaluationError as e:
                log.error(f"Evaluation of {target} failed: {e.kind}")
                errors[target] = e
        if errors:
            log.error(f"Evaluation aborted: {len(errors)} of {len(errors) + len(configs)} target(s) failed")
            raise EvaluationAborted(errors)
        return dict(sorted(configs.items()))

    def run_checks(
        self,
        configs: Mapping[TargetRef, ConfigInfo],
        ignore_store: Mapping[str, IgnoreMap] | None = None,
        cli_ignores: IgnoreMap | None = None,
    ) -> dict[TargetRef, TargetReport]:
        store = ignore_store or {}
        extra = cli_ignores or IgnoreMap()
        reports = {}
        for target in sorted(configs):
            ignore_map = merge_ignore_maps(store.get(target.attribute, IgnoreMap()), extra)
            results = run_all_checks(configs[target], self.user_info, ignore_map)
            reports[target] = TargetReport(target, configs[target], tuple(results))
        return reports

    def check_gate(
        self,
        configs: Mapping[TargetRef, ConfigInfo],
        ignore_store: Mapping[str, IgnoreMap] | None = None,
        cli_ignores: IgnoreMap | None = None,
    ) -> dict[TargetRef, TargetReport]:
        """Raise CheckGateFailure if any target has an unignored failure."""
        reports = self.run_checks(configs, ignore_store, cli_ignores)
        failures = {
            target: report.unignored_failures
            for target, report in reports.items()
            if report.unignored_failures
        }
        if failures:
            log.error(f"Check gate failed for {len(failures)} target(s)")
            raise CheckGateFailure(failures)
        return reports

    def partition(
        self, configs: Mapping[TargetRef, ConfigInfo]
    ) -> tuple[list[TargetRef], list[TargetRef]]:
        """Split targets into (locally buildable, realized by their own host)."""
        local, remote = [], []
        for target in sorted(configs):
            if self.user_info.can_build_natively(configs[target].system):
                local.append(target)
            else:
                remote.append(target)
        log.info(f"{len(local)} target(s) build locally, {len(remote)} realize on their host")
        return local, remote

    @staticmethod
    def verify_hostname(config: ConfigInfo, local_hostname: str) -> None:
        if config.host_name != local_hostname:
            raise HostnameMismatch(config.host_name, local_hostname)

    # ── Phase two: side effects ─────────────────────────────────────────────
    def _build_batch(
        self, targets: Sequence[TargetRef], outcomes: dict[TargetRef, TargetOutcome]
    ) -> bool:
        if not targets:
            return True
        log.info(f"Building {len(targets)} configuration(s) locally")
        try:
            self.builder.realize_output_paths(targets)
        except BuildError as e:
            error = e
        except Exception as e:
            log.error(f"Batch build raised an unexpected error: {e}", exc_info=True)
            error = BuildError(f"unexpected error: {e}")
        else:
            return True
        log.error(f"Batch build failed: {error}")
        for target in targets:
            outcomes[target] = TargetOutcome.failed(target, error)
            self._record(outcomes[target])
        return False

    def build(self, configs: Mapping[TargetRef, ConfigInfo]) -> list[TargetOutcome]:
        """Realize every locally buildable target without deploying anything."""
        outcomes: dict[TargetRef, TargetOutcome] = {}
        local, remote = self.partition(configs)
        for target in remote:
            platform = configs[target].system
            outcomes[target] = TargetOutcome.failed(
                target,
                BuildError(
                    f"platform {platform} cannot be built here "
                    f"(local: {self.user_info.system}); only the target host can realize it"
                ),
            )
            self._record(outcomes[target])
        if self._build_batch(local, outcomes):
            for target in local:
                path = configs[target].toplevel_out
                outcomes[target] = TargetOutcome(
                    target, True, [(Severity.INFO, f"built {path}")], output_path=path
                )
                self._record(outcomes[target])
        return [outcomes[t] for t in sorted(outcomes)]

    def _activate_and_verify(
        self, target: TargetRef, path: str, host: str | None, reboot: bool
    ) -> TargetOutcome:
        log.info(f"[{target}] activating {path}")
        self.builder.activate(path, self.use_sudo, host)
        self.builder.switch_configuration(path, self.switch_command, self.use_sudo, host)
        log.info(f"[{target}] switched to {path}")

        outcome = TargetOutcome(
            target, True, [(Severity.INFO, f"switched to {path}")], output_path=path
        )
        outcome.status = self.status_probe(host)
        if isinstance(outcome.status, Unreachable):
            outcome.messages.append((Severity.WARNING, "health query failed"))
        elif isinstance(outcome.status, Reachable) and outcome.status.needs_reboot:
            if reboot and host is not None:
                log.info(f"[{target}] rebooting {host}")
                try:
                    self.builder.reboot(host)
                except RebootError as e:
                    outcome.messages.append((Severity.WARNING, f"reboot failed: {e}"))
                else:
                    outcome.reboot_initiated = True
                    outcome.messages.append((Severity.INFO, "reboot initiated"))
            else:
                outcome.messages.append((Severity.HINT, "reboot required"))
        return outcome

    def _deploy_local_build(
        self, target: TargetRef, config: ConfigInfo, host: str, reboot: bool
    ) -> TargetOutcome:
        try:
            log.info(f"[{target}] transferring {config.toplevel_out} to {host}")
            self.builder.transfer(config.toplevel_out, host)
            return self._activate_and_verify(target, config.toplevel_out, host, reboot)
        except PipelineError as e:
            return TargetOutcome.failed(target, e)
        except Exception as e:
            return self._unexpected(target, e)

    def _deploy_remote_build(
        self, target: TargetRef, config: ConfigInfo, host: str, reboot: bool
    ) -> TargetOutcome:
        try:
            log.info(f"[{target}] transferring {config.toplevel_drv} to {host}")
            self.builder.transfer(config.toplevel_drv, host)
            log.info(f"[{target}] realizing on {host}")
            path = self.builder.realize_request_remotely(config.toplevel_drv, host)
            return self._activate_and_verify(target, path, host, reboot)
        except PipelineError as e:
            return TargetOutcome.failed(target, e)
        except Exception as e:
            return self._unexpected(target, e)

    def deploy_remote(
        self, configs: Mapping[TargetRef, ConfigInfo], reboot: bool = False
    ) -> list[TargetOutcome]:
        """
        Deploy already evaluated and gated targets to their hosts.

        Targets realized by their own host start immediately. Locally built
        targets start only after the single batched build has completed.
        """
        outcomes: dict[TargetRef, TargetOutcome] = {}
        hosts: dict[TargetRef, str] = {}
        for target, config in configs.items():
            if config.deploy_host is None:
                outcomes[target] = TargetOutcome.failed(
                    target, NoHostNameError(f"{target} declares no host name to deploy to")
                )
                self._record(outcomes[target])
            else:
                hosts[target] = config.deploy_host

        local, remote = self.partition({target: configs[target] for target in hosts})
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures: dict[Future[TargetOutcome], TargetRef] = {}
            try:
                for target in remote:
                    future = pool.submit(
                        self._deploy_remote_build, target, configs[target], hosts[target], reboot
                    )
                    futures[future] = target

                if self._build_batch(local, outcomes):
                    for target in local:
                        future = pool.submit(
                            self._deploy_local_build, target, configs[target], hosts[target], reboot
                        )
                        futures[future] = target

                for future in as_completed(futures):
                    target = futures[future]
                    try:
                        outcomes[target] = future.result()
                    except Exception as e:
                        outcomes[target] = self._unexpected(target, e)
                    self._record(outcomes[target])
            except BaseException:
                pool.shutdown(wait=False, cancel_futures=True)
                raise
        return [outcomes[t] for t in sorted(outcomes)]

    def deploy_local(self, target: TargetRef, config: ConfigInfo) -> TargetOutcome:
        """Build, activate and switch `target` on this machine."""
        try:
            self.builder.realize_output_paths([target])
            outcome = self._activate_and_verify(target, config.toplevel_out, None, reboot=False)
        except PipelineError as e:
            outcome = TargetOutcome.failed(target, e)
        except Exception as e:
            outcome = self._unexpected(target, e)
        self._record(outcome)
        return outcome

    # ── Commands ────────────────────────────────────────────────────────────
    def build_targets(self, targets: Sequence[TargetRef]) -> list[TargetOutcome]:
        return self.build(self.evaluate_all(targets))

    def switch_remote(
        self,
        targets: Sequence[TargetRef],
        *,
        ignore_store: Mapping[str, IgnoreMap] | None = None,
        cli_ignores: IgnoreMap | None = None,
        skip_checks: bool = False,
        reboot: bool = False,
    ) -> list[TargetOutcome]:
        configs = self.evaluate_all(targets)
        if skip_checks:
            log.warning("Skipping configuration checks.")
        else:
            self.check_gate(configs, ignore_store, cli_ignores)
        return self.deploy_remote(configs, reboot=reboot)

    def switch_local(
        self,
        target: TargetRef,
        local_hostname: str,
        *,
        ignore_store: Mapping[str, IgnoreMap] | None = None,
        cli_ignores: IgnoreMap | None = None,
        skip_checks: bool = False,
        ignore_hostname: bool = False,
    ) -> TargetOutcome:
        configs = self.evaluate_all([target])
        config = configs[target]
        if not ignore_hostname:
            self.verify_hostname(config, local_hostname)
        if not skip_checks:
            self.check_gate(configs, ignore_store, cli_ignores)
        return self.deploy_local(target, config)

    def check(
        self,
        targets: Sequence[TargetRef],
        ignore_store: Mapping[str, IgnoreMap] | None = None,
        cli_ignores: IgnoreMap | None = None,
    ) -> dict[TargetRef, TargetReport]:
        return self.run_checks(self.evaluate_all(targets), ignore_store, cli_ignores)

    def status(
        self, targets: Sequence[TargetRef]
    ) -> dict[TargetRef, tuple[ConfigInfo, SystemStatus]]:
        configs = self.evaluate_all(targets)

        def probe(target: TargetRef) -> SystemStatus:
            host = configs[target].deploy_host
            if host is None:
                return Unreachable("no host name declared")
            return self.status_probe(host)

        statuses = {target: future.result() for target, future in self._fan_out(probe, configs)}
        return {target: (configs[target], statuses[target]) for target in sorted(configs)}
