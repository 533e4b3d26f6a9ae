# src/runwright/dsl.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .errors import MalformedDefinition
from .model import ActionRef, Event, Job, Step, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    cmd: str,
    *,
    name: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> Step:
    """Create an inline shell step. `timeout` is in seconds."""
    return Step(run=cmd, name=name, cwd=cwd, env=env or {}, timeout=timeout)


def uses(
    ref: str,
    *,
    name: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    **params: object,
) -> Step:
    """
    Create an action step.

        uses("actions/checkout@v4")
        uses("dtolnay/rust-toolchain@v1", toolchain="stable", components="rustfmt, clippy")
    """
    with_ = {k: _param(v) for k, v in params.items()}
    return Step(uses=ActionRef.parse(ref), name=name, with_=with_, env=env or {}, timeout=timeout)


def _param(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    runs_on: str = "ubuntu-latest",
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)
    return Job(name=name, steps=tuple(steps_final), runs_on=runs_on, env=env or {}, timeout=timeout)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._runs_on = "ubuntu-latest"
        self._env: dict[str, str] = {}
        self._timeout: float | None = None

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def step(self, cmd: str, name: str | None = None, cwd: str | None = None):
        self._steps.append(sh(cmd, name=name, cwd=cwd))
        return self

    def action(self, ref: str, name: str | None = None, **params: object):
        self._steps.append(uses(ref, name=name, **params))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        return job(self.name, *self._steps, runs_on=self._runs_on, env=self._env, timeout=self._timeout)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Job,
    on: str | Event | Iterable[str | Event] = ("push",),
    env: Optional[Dict[str, str]] = None,
) -> Workflow:
    """
    Workflow definition helper. Named `wf` so a workflow file can define its
    own `def workflow(): return wf(...)`.

        from runwright import wf, job, sh, uses

        def workflow():
            return wf(
                "main",
                job("test", uses("actions/checkout@v4"), sh("pytest -q")),
                on=["push", "pull_request"],
            )
    """
    if isinstance(on, str):
        on = [on]
    try:
        events = tuple(e if isinstance(e, Event) else Event.parse(e) for e in on)
    except ValueError as e:
        raise MalformedDefinition(str(e), "on") from None
    return Workflow(name=name, on=events, jobs=tuple(jobs), env=env or {})
