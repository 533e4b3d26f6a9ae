# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import MalformedDefinition
from .model import ActionRef, Event, Job, Step, Workflow

WORKFLOW_SUFFIXES = (".yml", ".yaml", ".py")

_STEP_KEYS = {"name", "run", "uses", "with", "env", "working-directory", "timeout-minutes"}
_JOB_KEYS = {"runs-on", "steps", "env", "timeout-minutes"}


# ----------------------------------------------------------------------
# Field helpers
# ----------------------------------------------------------------------

def _scalar(value: Any, where: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (str, int, float)):
        return str(value)
    raise MalformedDefinition(f"expected a scalar value, got {type(value).__name__}", where)


def _string_map(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise MalformedDefinition("expected a mapping of strings", where)
    return {str(k): _scalar(v, f"{where}.{k}") for k, v in value.items()}


def _minutes(value: Any, where: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise MalformedDefinition("timeout-minutes must be a positive number", where)
    return float(value) * 60.0


def _events(value: Any) -> List[Event]:
    if value is None:
        raise MalformedDefinition("missing trigger list", "on")
    if isinstance(value, str):
        raw = [value]
    elif isinstance(value, Mapping):
        raw = list(value.keys())
    elif isinstance(value, list):
        raw = value
    else:
        raise MalformedDefinition("expected an event name, a list or a mapping", "on")
    if not raw:
        raise MalformedDefinition("trigger list is empty", "on")

    events: List[Event] = []
    for item in raw:
        if not isinstance(item, str):
            raise MalformedDefinition(f"event names must be strings, got {item!r}", "on")
        try:
            event = Event.parse(item)
        except ValueError as e:
            raise MalformedDefinition(str(e), "on") from None
        if event not in events:
            events.append(event)
    return events


# ----------------------------------------------------------------------
# Document -> model
# ----------------------------------------------------------------------

def _load_step(raw: Any, where: str) -> Step:
    if not isinstance(raw, Mapping):
        raise MalformedDefinition("a step must be a mapping", where)
    unknown = sorted(set(map(str, raw.keys())) - _STEP_KEYS)
    if unknown:
        raise MalformedDefinition(f"unknown step keys: {unknown}", where)

    has_run = raw.get("run") is not None
    has_uses = raw.get("uses") is not None
    if not has_run and not has_uses:
        raise MalformedDefinition("step specifies neither 'uses' nor 'run'", where)
    if has_run and has_uses:
        raise MalformedDefinition("step specifies both 'uses' and 'run'", where)

    name = raw.get("name")
    if name is not None and not isinstance(name, str):
        raise MalformedDefinition("'name' must be a string", where)
    cwd = raw.get("working-directory")
    if cwd is not None and not isinstance(cwd, str):
        raise MalformedDefinition("'working-directory' must be a string", where)
    env = _string_map(raw.get("env"), f"{where}.env")
    timeout = _minutes(raw.get("timeout-minutes"), f"{where}.timeout-minutes")

    try:
        if has_uses:
            if not isinstance(raw["uses"], str):
                raise MalformedDefinition("'uses' must be a string")
            if cwd is not None:
                raise MalformedDefinition("'working-directory' is only valid on 'run' steps")
            return Step(
                uses=ActionRef.parse(raw["uses"]),
                name=name,
                with_=_string_map(raw.get("with"), f"{where}.with"),
                env=env,
                timeout=timeout,
            )
        if not isinstance(raw["run"], str):
            raise MalformedDefinition("'run' must be a string")
        if raw.get("with") is not None:
            raise MalformedDefinition("'with' is only valid on 'uses' steps")
        return Step(run=raw["run"], name=name, env=env, cwd=cwd, timeout=timeout)
    except MalformedDefinition as e:
        if e.location is None:
            e.location = where
        raise


def _load_job(name: str, raw: Any) -> Job:
    where = f"jobs.{name}"
    if not isinstance(raw, Mapping):
        raise MalformedDefinition("a job must be a mapping", where)
    unknown = sorted(set(map(str, raw.keys())) - _JOB_KEYS)
    if unknown:
        raise MalformedDefinition(f"unknown job keys: {unknown}", where)

    steps_raw = raw.get("steps")
    if steps_raw is None:
        raise MalformedDefinition("missing step list", f"{where}.steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise MalformedDefinition("steps must be a non-empty list", f"{where}.steps")

    runs_on = raw.get("runs-on", "ubuntu-latest")
    if not isinstance(runs_on, str) or not runs_on:
        raise MalformedDefinition("'runs-on' must be a runner label", f"{where}.runs-on")

    steps = [_load_step(s, f"{where}.steps[{i}]") for i, s in enumerate(steps_raw)]
    return Job(
        name=name,
        steps=tuple(steps),
        runs_on=runs_on,
        env=_string_map(raw.get("env"), f"{where}.env"),
        timeout=_minutes(raw.get("timeout-minutes"), f"{where}.timeout-minutes"),
    )


def load(definition: Any, *, default_name: str = "workflow") -> Workflow:
    """
    Parse a structured workflow document into an immutable Workflow.

    The document has the shape::

        name: main
        on: [push, pull_request]
        jobs:
          <job>:
            runs-on: ubuntu-latest
            steps:
              - uses: name@version
                with: {key: value}
              - run: <command>

    Raises MalformedDefinition on any schema violation; no partial workflow
    is ever returned.
    """
    if not isinstance(definition, Mapping):
        raise MalformedDefinition("workflow document must be a mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    on_value = definition.get("on", definition.get(True))
    events = _events(on_value)

    name = definition.get("name", default_name)
    if not isinstance(name, str) or not name:
        raise MalformedDefinition("'name' must be a non-empty string", "name")

    jobs_raw = definition.get("jobs")
    if jobs_raw is None:
        raise MalformedDefinition("missing job mapping", "jobs")
    if not isinstance(jobs_raw, Mapping) or not jobs_raw:
        raise MalformedDefinition("jobs must be a non-empty mapping of name -> job", "jobs")

    jobs = []
    for job_name, job_raw in jobs_raw.items():
        if not isinstance(job_name, str) or not job_name:
            raise MalformedDefinition(f"job names must be non-empty strings, got {job_name!r}", "jobs")
        jobs.append(_load_job(job_name, job_raw))

    return Workflow(
        name=name,
        on=tuple(events),
        jobs=tuple(jobs),
        env=_string_map(definition.get("env"), "env"),
    )


def loads(text: str, *, default_name: str = "workflow") -> Workflow:
    """Parse a YAML workflow document from a string."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedDefinition(f"invalid YAML: {e}") from e
    return load(document, default_name=default_name)


# ----------------------------------------------------------------------
# Workflow files
# ----------------------------------------------------------------------

def _load_python(wf_path: Path) -> Workflow:
    module_name = f"runwright_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

        wf = None
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            wf = globals_dict["workflow"]()
        elif "WORKFLOW" in globals_dict:
            wf = globals_dict["WORKFLOW"]
    except MalformedDefinition as e:
        e.message = f"{wf_path.name}: {e.message}"
        raise
    except Exception as e:
        raise MalformedDefinition(f"error while loading workflow: {type(e).__name__}: {e}", str(wf_path)) from e

    if isinstance(wf, Mapping):
        return load(wf, default_name=wf_path.stem)
    if not isinstance(wf, Workflow):
        raise MalformedDefinition(
            "Python workflow files must define workflow() -> Workflow or WORKFLOW = Workflow(...)",
            str(wf_path),
        )
    return wf


def load_file(path: str | Path) -> Workflow:
    """
    Load a workflow from a file path.

    `.yml` / `.yaml` files are parsed as workflow documents. `.py` files must
    define either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix not in WORKFLOW_SUFFIXES:
        raise ValueError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    if wf_path.suffix == ".py":
        return _load_python(wf_path)
    try:
        return loads(wf_path.read_text(encoding="utf-8"), default_name=wf_path.stem)
    except MalformedDefinition as e:
        e.message = f"{wf_path.name}: {e.message}"
        raise


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """
    Find workflow files under `directory`.

    Looks for runwright.yml / runwright.yaml, *_workflow.py and
    .github/workflows/*.yml, in that order.
    """
    root = Path(directory)
    found: List[Path] = []
    for name in ("runwright.yml", "runwright.yaml"):
        if (root / name).is_file():
            found.append(root / name)
    found.extend(sorted(root.glob("*_workflow.py")))
    gh = root / ".github" / "workflows"
    if gh.is_dir():
        found.extend(sorted(p for p in gh.iterdir() if p.suffix in (".yml", ".yaml")))
    return found
