# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import MalformedDefinition


def _frozen(mapping: Mapping[str, str] | None) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping or {}))


def _items(mapping: Mapping[str, str]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted(mapping.items()))


# ----------------------------------------------------------------------
# Definitions (immutable once loaded)
# ----------------------------------------------------------------------

class Event(str, Enum):
    """Trigger events a workflow can subscribe to."""
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"

    @classmethod
    def parse(cls, value: str) -> Event:
        # "pull-request" and "pull_request" name the same event
        key = str(value).strip().lower().replace("-", "_")
        try:
            return cls(key)
        except ValueError:
            known = ", ".join(e.value for e in cls)
            raise ValueError(f"unknown event {value!r} (known: {known})") from None


@dataclass(frozen=True)
class ActionRef:
    """A versioned reference to an external action: ``name@version``."""
    name: str
    version: str

    @classmethod
    def parse(cls, ref: str) -> ActionRef:
        name, sep, version = str(ref).strip().rpartition("@")
        if not sep or not name or not version:
            raise MalformedDefinition(f"action reference {ref!r} must look like name@version")
        return cls(name=name, version=version)

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class Step:
    """
    A single unit of execution inside a job.

    Exactly one of `run` (inline shell command) or `uses` (action reference)
    is set. `with_` holds the action parameters, always strings.
    """
    run: Optional[str] = None
    uses: Optional[ActionRef] = None
    name: Optional[str] = None
    with_: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = None   # seconds

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise MalformedDefinition("a step needs exactly one of 'run' or 'uses'")
        if self.run is not None and not str(self.run).strip():
            raise MalformedDefinition("'run' must be a non-empty command")
        if self.with_ and self.uses is None:
            raise MalformedDefinition("'with' is only valid on 'uses' steps")
        object.__setattr__(self, "with_", _frozen(self.with_))
        object.__setattr__(self, "env", _frozen(self.env))

    # read-only mappings are not hashable; hash their items instead
    def __hash__(self) -> int:
        return hash((self.run, self.uses, self.name, _items(self.with_), _items(self.env), self.cwd, self.timeout))

    @property
    def kind(self) -> str:
        return "run" if self.run is not None else "uses"

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses is not None:
            return str(self.uses)
        return self.run.strip().splitlines()[0]


@dataclass(frozen=True)
class Job:
    """A CI job: ordered steps running on one provisioned environment."""
    name: str
    steps: Tuple[Step, ...]
    runs_on: str = "ubuntu-latest"
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None   # seconds

    def __post_init__(self) -> None:
        if not self.name:
            raise MalformedDefinition("a job needs a name")
        if not self.steps:
            raise MalformedDefinition(f"job {self.name!r} must have at least one step")
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "env", _frozen(self.env))

    def __hash__(self) -> int:
        return hash((self.name, self.steps, self.runs_on, _items(self.env), self.timeout))


@dataclass(frozen=True)
class Workflow:
    """
    Top-level definition: trigger events plus jobs keyed by name.

    Job order is the declaration order; it drives launch order and report
    order, never execution dependencies.
    """
    name: str
    on: Tuple[Event, ...]
    jobs: Tuple[Job, ...]
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.on:
            raise MalformedDefinition(f"workflow {self.name!r} has no trigger events")
        if not self.jobs:
            raise MalformedDefinition(f"workflow {self.name!r} has no jobs")
        names = [j.name for j in self.jobs]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise MalformedDefinition(f"duplicate job names: {dupes}")
        object.__setattr__(self, "on", tuple(self.on))
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "env", _frozen(self.env))

    def __hash__(self) -> int:
        return hash((self.name, self.on, self.jobs, _items(self.env)))

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ----------------------------------------------------------------------
# Run state (fresh per run, never persisted)
# ----------------------------------------------------------------------

class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Verdict(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def exit_code(self) -> int:
        return 0 if self is Verdict.SUCCESS else 1


@dataclass
class StepResult:
    name: str
    kind: str
    status: StepStatus = StepStatus.PENDING
    exit_code: Optional[int] = None
    output: str = ""
    duration: float = 0.0
    error: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "output": self.output,
            "duration": round(self.duration, 3),
            "error": str(self.error) if self.error is not None else None,
            "error_type": type(self.error).__name__ if self.error is not None else None,
        }


@dataclass
class JobResult:
    name: str
    runs_on: str
    status: JobStatus = JobStatus.PENDING
    steps: List[StepResult] = field(default_factory=list)
    duration: float = 0.0
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    @property
    def failed_step(self) -> Optional[StepResult]:
        for s in self.steps:
            if s.status is StepStatus.FAILED:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "runs_on": self.runs_on,
            "status": self.status.value,
            "duration": round(self.duration, 3),
            "error": str(self.error) if self.error is not None else None,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class RunReport:
    """Aggregate outcome of one workflow run for one event."""
    workflow: str
    event: Event
    jobs: List[JobResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def verdict(self) -> Verdict:
        from .runner import verdict
        return verdict(self.jobs)

    @property
    def exit_code(self) -> int:
        return self.verdict.exit_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow,
            "event": self.event.value,
            "verdict": self.verdict.value,
            "cancelled": self.cancelled,
            "jobs": [j.to_dict() for j in self.jobs],
        }
