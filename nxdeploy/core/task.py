# nxdeploy/core/task.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from typing_extensions import TypedDict

from nxdeploy.core.errors import PipelineError
from nxdeploy.core.types import Reachable, SystemStatus, TargetRef, Unreachable


class ErrorDict(TypedDict):
    step: str
    message: str


class OutcomeDict(TypedDict):
    """JSON-friendly view of a TargetOutcome."""

    target: str
    success: bool
    messages: list[tuple[str, str]]
    output_path: Optional[str]
    reboot_initiated: bool
    error: Optional[ErrorDict]


class Severity(Enum):
    """Message severity, mapped onto logger method names."""

    HINT = "hint"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    def log_method(self) -> str:
        if self in (Severity.INFO, Severity.HINT):
            return "info"
        return self.value


@dataclass
class TargetOutcome:
    """What happened to one target during a build or deploy run."""

    target: TargetRef
    success: bool
    messages: list[tuple[Severity, str]] = field(default_factory=list)
    output_path: str | None = None
    status: SystemStatus | None = None
    reboot_initiated: bool = False
    error: PipelineError | None = None

    @classmethod
    def failed(cls, target: TargetRef, error: PipelineError) -> TargetOutcome:
        message = f"{error.step} failed: {error.message}"
        if error.detail:
            message = f"{message}\n{error.detail}"
        return cls(target, False, [(Severity.ERROR, message)], error=error)

    @property
    def summary(self) -> str:
        if self.error is not None:
            return f"{self.error.step} failed: {self.error.message}"
        if isinstance(self.status, Unreachable):
            return "deployed; health unknown (host unreachable)"
        if isinstance(self.status, Reachable):
            if self.reboot_initiated:
                return "deployed; reboot initiated"
            if self.status.needs_reboot:
                return "deployed; reboot required"
            if self.status.failed_unit_count:
                return f"deployed; {self.status.failed_unit_count} failed unit(s)"
            return "deployed"
        if self.output_path:
            return self.output_path
        return self.messages[-1][1] if self.messages else "ok"

    def as_dict(self) -> OutcomeDict:
        return {
            "target": str(self.target),
            "success": self.success,
            "messages": [(sev.value, msg) for sev, msg in self.messages],
            "output_path": self.output_path,
            "reboot_initiated": self.reboot_initiated,
            "error": None if self.error is None else {
                "step": self.error.step,
                "message": self.error.message,
            },
        }

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        return f"{status} {self.target}: {self.summary}"
