import logging
import threading

import pytest

from nxdeploy.checks.ignore import parse_ignore_string
from nxdeploy.core.errors import (
    BuildError,
    CheckGateFailure,
    EvaluationAborted,
    EvaluationFailed,
    HostnameMismatch,
    RebootError,
    TransferError,
)
from nxdeploy.core.task import Severity
from nxdeploy.core.types import Reachable, TargetRef, Unreachable


def _ref(name: str) -> TargetRef:
    return TargetRef(".", name)


@pytest.fixture
def fleet(evaluator, make_config):
    """Three x86 hosts that pass every check."""
    return [evaluator.add(_ref(name), make_config(name)) for name in ("web1", "web2", "web3")]


# ── Phase one ───────────────────────────────────────────────────────────────
def test_resolve_targets_sorts_and_dedups(deployer):
    targets = [_ref("b"), _ref("a"), _ref("b")]
    assert deployer.resolve_targets(targets) == [_ref("a"), _ref("b")]


def test_resolve_targets_discovers_all_configurations(deployer, evaluator):
    evaluator.attributes["/srv/fleet"] = ["db", "app"]
    assert deployer.resolve_targets([], "/srv/fleet") == [
        TargetRef("/srv/fleet", "app"),
        TargetRef("/srv/fleet", "db"),
    ]


@pytest.mark.parametrize(
    ("system", "is_local"),
    [
        ("x86_64-linux", True),
        ("i686-linux", True),
        ("aarch64-linux", True),
        ("riscv64-linux", False),
    ],
)
def test_partition_by_build_capability(deployer, make_config, system, is_local):
    target = _ref("host")
    local, remote = deployer.partition({target: make_config("host", system=system)})
    assert (local, remote) == (([target], []) if is_local else ([], [target]))


def test_unexpected_evaluator_error_propagates(deployer, evaluator, builder, fleet, monkeypatch):
    def broken(target):
        if target == fleet[0]:
            raise RuntimeError("evaluator crashed")
        return evaluator.configs[target]

    monkeypatch.setattr(evaluator, "evaluate_configuration", broken)

    with pytest.raises(RuntimeError, match="evaluator crashed"):
        deployer.switch_remote(fleet)
    assert builder.calls == []


def test_evaluation_failure_aborts_before_side_effects(deployer, evaluator, builder, fleet):
    evaluator.errors[fleet[1]] = EvaluationFailed("attribute 'web2' missing")

    with pytest.raises(EvaluationAborted) as excinfo:
        deployer.switch_remote(fleet)

    assert list(excinfo.value.errors) == [fleet[1]]
    assert builder.calls == []


def test_check_gate_failure_aborts_before_side_effects(deployer, evaluator, builder, make_config):
    target = evaluator.add(_ref("web1"), make_config("web1", ssh_enabled=False))

    with pytest.raises(CheckGateFailure) as excinfo:
        deployer.switch_remote([target])

    assert excinfo.value.failures == {target: [("remote_deployment", "ssh_enabled")]}
    assert builder.calls == []


def test_stored_and_cli_ignores_are_merged(deployer, evaluator, builder, make_config):
    target = evaluator.add(
        _ref("web1"), make_config("web1", ssh_enabled=False, intel_microcode=False)
    )
    store = {"web1": parse_ignore_string("remote_deployment.ssh_enabled")}

    outcomes = deployer.switch_remote(
        [target],
        ignore_store=store,
        cli_ignores=parse_ignore_string("hardware_configuration.*"),
    )

    assert [o.success for o in outcomes] == [True]
    assert builder.steps("web1") == ["transfer", "activate", "switch"]


def test_store_entries_for_other_hosts_do_not_apply(deployer, evaluator, make_config):
    target = evaluator.add(_ref("web1"), make_config("web1", ssh_enabled=False))
    store = {"web2": parse_ignore_string("remote_deployment.*")}
    with pytest.raises(CheckGateFailure):
        deployer.switch_remote([target], ignore_store=store)


def test_skip_checks_bypasses_gate(deployer, evaluator, make_config):
    target = evaluator.add(_ref("web1"), make_config("web1", ssh_enabled=False))
    outcomes = deployer.switch_remote([target], skip_checks=True)
    assert outcomes[0].success


# ── Phase two ───────────────────────────────────────────────────────────────
def test_all_targets_deploy(deployer, builder, fleet):
    outcomes = deployer.switch_remote(fleet)

    assert [o.target for o in outcomes] == fleet
    assert all(o.success for o in outcomes)
    assert [c[0] for c in builder.calls].count("build") == 1
    build_call = next(c for c in builder.calls if c[0] == "build")
    assert sorted(build_call[2]) == fleet
    for name in ("web1", "web2", "web3"):
        assert builder.steps(name) == ["transfer", "activate", "switch"]


def test_one_transfer_failure_does_not_stop_the_others(deployer, builder, fleet):
    builder.failures[("transfer", "web2")] = TransferError("copy to web2 failed", "connection refused")

    outcomes = {o.target.attribute: o for o in deployer.switch_remote(fleet)}

    assert outcomes["web1"].success and outcomes["web3"].success
    assert not outcomes["web2"].success
    assert outcomes["web2"].error.step == "transfer"
    assert outcomes["web2"].summary == "transfer failed: copy to web2 failed"
    assert "connection refused" in outcomes["web2"].messages[0][1]
    assert builder.steps("web2") == ["transfer"]
    assert builder.steps("web1") == ["transfer", "activate", "switch"]
    assert builder.steps("web3") == ["transfer", "activate", "switch"]


def test_batch_build_failure_fails_every_local_target(deployer, evaluator, builder, make_config):
    web1 = evaluator.add(_ref("web1"), make_config("web1"))
    web2 = evaluator.add(_ref("web2"), make_config("web2"))
    rv1 = evaluator.add(_ref("rv1"), make_config("rv1", system="riscv64-linux"))
    builder.failures[("build", None)] = BuildError("nix build exited with code 1")

    outcomes = {o.target: o for o in deployer.switch_remote([web1, web2, rv1])}

    assert not outcomes[web1].success and outcomes[web1].error.step == "build"
    assert not outcomes[web2].success and outcomes[web2].error.step == "build"
    assert outcomes[rv1].success
    assert builder.steps("web1") == []


def test_foreign_platform_is_realized_by_its_host(deployer, evaluator, builder, make_config):
    target = evaluator.add(_ref("rv1"), make_config("rv1", system="riscv64-linux"))

    [outcome] = deployer.switch_remote([target])

    assert outcome.success
    assert builder.steps("rv1") == ["transfer", "realize", "activate", "switch"]
    transfer, realize, activate, _switch = builder.calls
    assert transfer[2] == "/nix/store/rv1-nixos-system.drv"
    assert realize[2] == "/nix/store/rv1-nixos-system.drv"
    assert activate[2] == "/nix/store/rv1-nixos-system"
    assert builder.steps(None) == []


def test_missing_host_name_fails_only_that_target(deployer, evaluator, builder, make_config):
    ghost = evaluator.add(_ref("ghost"), make_config("ghost", fqdn_or_host_name=None))
    web1 = evaluator.add(_ref("web1"), make_config("web1"))

    outcomes = {o.target: o for o in deployer.switch_remote([ghost, web1])}

    assert outcomes[ghost].error.step == "resolve host"
    assert outcomes[web1].success
    build_call = next(c for c in builder.calls if c[0] == "build")
    assert list(build_call[2]) == [web1]


def test_switch_uses_configured_command_and_sudo(evaluator, builder, probe, user_info, make_config):
    from nxdeploy.core.deploy import Deployer

    deployer = Deployer(
        evaluator, builder, user_info, switch_command="boot", use_sudo=False, status_probe=probe
    )
    target = evaluator.add(_ref("web1"), make_config("web1"))
    deployer.switch_remote([target])

    switch = next(c for c in builder.calls if c[0] == "switch")
    assert switch[3:] == ("boot", False)



def test_unexpected_error_fails_only_that_target(deployer, builder, fleet):
    builder.failures[("transfer", "web2")] = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

    outcomes = {o.target.attribute: o for o in deployer.switch_remote(fleet)}

    assert not outcomes["web2"].success
    assert outcomes["web2"].error.step == "pipeline"
    assert "invalid start byte" in outcomes["web2"].summary
    assert outcomes["web1"].success and outcomes["web3"].success


def test_worker_crash_is_folded_into_its_outcome(deployer, evaluator, builder, monkeypatch, make_config):
    web1 = evaluator.add(_ref("web1"), make_config("web1"))
    rv1 = evaluator.add(_ref("rv1"), make_config("rv1", system="riscv64-linux"))

    def crash(*args):
        raise RuntimeError("worker crashed")

    monkeypatch.setattr(deployer, "_deploy_remote_build", crash)

    outcomes = {o.target: o for o in deployer.switch_remote([web1, rv1])}

    assert outcomes[web1].success
    assert not outcomes[rv1].success
    assert outcomes[rv1].summary == "pipeline failed: unexpected error: worker crashed"


def test_unexpected_batch_build_error_fails_local_targets(deployer, evaluator, builder, make_config):
    web1 = evaluator.add(_ref("web1"), make_config("web1"))
    rv1 = evaluator.add(_ref("rv1"), make_config("rv1", system="riscv64-linux"))
    builder.failures[("build", None)] = ValueError("malformed build output")

    outcomes = {o.target: o for o in deployer.switch_remote([web1, rv1])}

    assert outcomes[web1].error.step == "build"
    assert outcomes[rv1].success


def test_local_pipelines_wait_for_batch_build(deployer, evaluator, builder, monkeypatch, make_config):
    local = [evaluator.add(_ref(name), make_config(name)) for name in ("web1", "web2")]
    rv1 = evaluator.add(_ref("rv1"), make_config("rv1", system="riscv64-linux"))
    remote_started = threading.Event()
    build_saw_remote = []
    realize, transfer = builder.realize_output_paths, builder.transfer

    def gated_build(targets):
        build_saw_remote.append(remote_started.wait(timeout=5))
        return realize(targets)

    def flagging_transfer(path, host):
        transfer(path, host)
        if path.endswith(".drv"):
            remote_started.set()

    monkeypatch.setattr(builder, "realize_output_paths", gated_build)
    monkeypatch.setattr(builder, "transfer", flagging_transfer)

    outcomes = deployer.switch_remote([*local, rv1])

    assert all(o.success for o in outcomes)
    assert build_saw_remote == [True]
    steps = [(call[0], call[1]) for call in builder.calls]
    build_index = steps.index(("build", None))
    assert build_index < steps.index(("transfer", "web1"))
    assert build_index < steps.index(("transfer", "web2"))
    assert steps.index(("transfer", "rv1")) < build_index


def test_outcome_messages_are_logged_at_their_severity(deployer, probe, fleet, caplog):
    probe.statuses["web1"] = Unreachable("ssh: connection timed out")

    with caplog.at_level(logging.INFO, logger="nxdeploy.core.deploy"):
        deployer.switch_remote(fleet[:1])

    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert "[.#web1] health query failed" in warnings

# ── Health and reboot ───────────────────────────────────────────────────────
def _needs_reboot() -> Reachable:
    return Reachable("/nix/store/new-system", needs_reboot=True, uptime_seconds=10, failed_unit_count=0)


def test_reboot_required_is_reported(deployer, builder, probe, fleet):
    probe.statuses["web1"] = _needs_reboot()

    outcomes = {o.target.attribute: o for o in deployer.switch_remote(fleet[:1])}

    assert outcomes["web1"].summary == "deployed; reboot required"
    assert (Severity.HINT, "reboot required") in outcomes["web1"].messages
    assert "reboot" not in builder.steps("web1")


def test_reboot_is_initiated_when_requested(deployer, builder, probe, fleet):
    probe.statuses["web1"] = _needs_reboot()

    [outcome] = deployer.switch_remote(fleet[:1], reboot=True)

    assert outcome.reboot_initiated
    assert outcome.summary == "deployed; reboot initiated"
    assert builder.steps("web1")[-1] == "reboot"


def test_reboot_failure_keeps_target_successful(deployer, builder, probe, fleet):
    probe.statuses["web1"] = _needs_reboot()
    builder.failures[("reboot", "web1")] = RebootError("ssh exited with code 1")

    [outcome] = deployer.switch_remote(fleet[:1], reboot=True)

    assert outcome.success
    assert not outcome.reboot_initiated
    assert any(sev is Severity.WARNING and "reboot failed" in msg for sev, msg in outcome.messages)


def test_healthy_host_is_not_rebooted(deployer, builder, fleet):
    [outcome] = deployer.switch_remote(fleet[:1], reboot=True)
    assert outcome.summary == "deployed"
    assert "reboot" not in builder.steps("web1")


def test_unreachable_after_switch_is_a_warning(deployer, probe, fleet):
    probe.statuses["web1"] = Unreachable("ssh: connection timed out")

    [outcome] = deployer.switch_remote(fleet[:1])

    assert outcome.success
    assert outcome.summary == "deployed; health unknown (host unreachable)"


def test_failed_units_are_surfaced(deployer, probe, fleet):
    probe.statuses["web1"] = Reachable("/nix/store/x", False, 100, 2)
    [outcome] = deployer.switch_remote(fleet[:1])
    assert outcome.summary == "deployed; 2 failed unit(s)"


# ── Local switch ────────────────────────────────────────────────────────────
def test_switch_local_rejects_other_host(deployer, evaluator, builder, make_config):
    target = evaluator.add(_ref("web1"), make_config("web1"))

    with pytest.raises(HostnameMismatch) as excinfo:
        deployer.switch_local(target, "laptop")

    assert excinfo.value.expected == "web1"
    assert excinfo.value.actual == "laptop"
    assert builder.calls == []


def test_switch_local_runs_without_ssh(deployer, evaluator, builder, probe, make_config):
    target = evaluator.add(_ref("web1"), make_config("web1"))

    outcome = deployer.switch_local(target, "web1")

    assert outcome.success
    assert builder.steps(None) == ["build", "activate", "switch"]
    assert probe.calls == [None]


def test_switch_local_can_ignore_hostname(deployer, evaluator, make_config):
    target = evaluator.add(_ref("web1"), make_config("web1"))
    assert deployer.switch_local(target, "laptop", ignore_hostname=True).success


def test_switch_local_gates_on_checks(deployer, evaluator, builder, make_config):
    target = evaluator.add(_ref("web1"), make_config("web1", nix_gc=False))
    with pytest.raises(CheckGateFailure):
        deployer.switch_local(target, "web1")
    assert builder.calls == []


# ── build / check / status ──────────────────────────────────────────────────
def test_build_reports_foreign_platforms(deployer, evaluator, builder, make_config):
    web1 = evaluator.add(_ref("web1"), make_config("web1"))
    rv1 = evaluator.add(_ref("rv1"), make_config("rv1", system="riscv64-linux"))

    outcomes = deployer.build_targets([web1, rv1])

    assert [o.target for o in outcomes] == [rv1, web1]
    assert outcomes[0].error.step == "build"
    assert "riscv64-linux" in outcomes[0].summary
    assert outcomes[1].success
    assert outcomes[1].output_path == "/nix/store/web1-nixos-system"
    assert [c[0] for c in builder.calls] == ["build"]


def test_build_does_not_run_checks(deployer, evaluator, make_config):
    target = evaluator.add(_ref("web1"), make_config("web1", ssh_enabled=False))
    assert deployer.build_targets([target])[0].success


def test_check_returns_reports_without_gating(deployer, evaluator, builder, make_config):
    target = evaluator.add(_ref("web1"), make_config("web1", ssh_enabled=False))

    reports = deployer.check([target])

    assert reports[target].unignored_failures == [("remote_deployment", "ssh_enabled")]
    assert builder.calls == []


def test_check_aborts_on_evaluation_error(deployer, evaluator, fleet):
    evaluator.errors[fleet[0]] = EvaluationFailed("syntax error")
    with pytest.raises(EvaluationAborted):
        deployer.check(fleet)


def test_status_queries_each_host(deployer, evaluator, probe, make_config):
    web1 = evaluator.add(_ref("web1"), make_config("web1"))
    ghost = evaluator.add(_ref("ghost"), make_config("ghost", fqdn_or_host_name=None))

    statuses = deployer.status([web1, ghost])

    assert list(statuses) == [ghost, web1]
    assert isinstance(statuses[web1][1], Reachable)
    assert statuses[ghost][1] == Unreachable("no host name declared")
    assert probe.calls == ["web1"]
