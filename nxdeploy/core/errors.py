# nxdeploy/core/errors.py
"""
Error taxonomy for nxdeploy.

Batch-fatal errors (EvaluationAborted, CheckGateFailure, HostnameMismatch)
abort an invocation before any side effect. PipelineError subclasses are
fatal for a single target only and end up folded into that target's outcome.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nxdeploy.core.types import TargetRef


class NxDeployError(Exception):
    """Base class for every error raised by nxdeploy."""


class TargetRefParseError(NxDeployError, ValueError):
    def __init__(self, text: str):
        super().__init__(f"Multiple '#' signs found in '{text}'")
        self.text = text


class UserInfoError(NxDeployError):
    """The operator profile could not be collected."""


# ── Evaluation ──────────────────────────────────────────────────────────────
class EvaluationError(NxDeployError):
    """A configuration could not be read or parsed."""

    kind = "evaluation"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EvaluationFailed(EvaluationError):
    kind = "evaluation failed"


class DeserializationFailed(EvaluationError):
    kind = "deserialization failed"


class EvaluatorIOError(EvaluationError):
    kind = "I/O failed"


class EvaluationAborted(NxDeployError):
    """At least one target failed to evaluate; nothing was built or deployed."""

    def __init__(self, errors: Mapping[TargetRef, EvaluationError]):
        self.errors = dict(sorted(errors.items()))
        names = ", ".join(str(t) for t in self.errors)
        super().__init__(f"Evaluation failed for {len(self.errors)} target(s): {names}")


# ── Check gate ──────────────────────────────────────────────────────────────
class CheckGateFailure(NxDeployError):
    """One or more targets have unignored check failures."""

    def __init__(self, failures: Mapping[TargetRef, Sequence[tuple[str, str]]]):
        self.failures = {target: list(pairs) for target, pairs in sorted(failures.items())}
        names = ", ".join(str(t) for t in self.failures)
        super().__init__(f"Configuration checks failed for: {names}")


class HostnameMismatch(NxDeployError):
    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"Configuration is for host '{expected}' but this machine is '{actual}'"
        )
        self.expected = expected
        self.actual = actual


# ── Per-target pipeline ─────────────────────────────────────────────────────
class PipelineError(NxDeployError):
    """A build/transfer/activate/switch step failed for one target."""

    step = "pipeline"

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        return self.message


class NoHostNameError(PipelineError):
    step = "resolve host"


class BuildError(PipelineError):
    step = "build"


class TransferError(PipelineError):
    step = "transfer"


class ActivateError(PipelineError):
    step = "activate"


class SwitchError(PipelineError):
    step = "switch"


class RebootError(PipelineError):
    step = "reboot"


# ── Ignore directives ───────────────────────────────────────────────────────
class IgnoreParseError(NxDeployError, ValueError):
    reason = "invalid ignore directive"

    def __init__(self, item: str):
        super().__init__(f"{self.reason} in '{item}'")
        self.item = item


class NoGroupError(IgnoreParseError):
    reason = "No group specified (expected 'group.check' or 'group.*')"


class EmptyGroupError(IgnoreParseError):
    reason = "Empty group name"


class EmptyCheckError(IgnoreParseError):
    reason = "Empty check name"


class IgnoreFileError(NxDeployError):
    """The persisted ignore file is not valid YAML of the expected shape."""
