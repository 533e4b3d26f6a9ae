# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class RunwrightError(Exception):
    """Base class for every error raised by runwright."""


@dataclass
class MalformedDefinition(RunwrightError):
    """The workflow document violates the schema. Nothing runs."""
    message: str
    location: Optional[str] = None

    def __str__(self) -> str:
        if self.location:
            return f"{self.location}: {self.message}"
        return self.message


@dataclass
class CIError(RunwrightError):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON report
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: Optional[str]
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepExecutionFailure(CIError):
    """A command exited non-zero, timed out, or an action signaled failure."""
    exit_code: Optional[int] = None


@dataclass
class EnvironmentProvisioningFailure(CIError):
    """The job's execution environment could not be prepared."""


@dataclass
class Cancelled(CIError):
    """The run was cancelled while this job or step was in flight."""


@dataclass
class UnknownAction(RunwrightError):
    """No registered action accepts the given reference."""
    ref: str
    reason: str = "not registered"

    def __str__(self) -> str:
        return f"action {self.ref} {self.reason}"
