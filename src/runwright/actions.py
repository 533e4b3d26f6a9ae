# actions.py
from __future__ import annotations

import os
import shutil
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .environment import CommandResult, Environment
from .errors import UnknownAction
from .git_facts import git
from .model import ActionRef


# ---------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------

@dataclass
class ActionOutcome:
    """What an action reports back to the runner."""
    success: bool
    output: str = ""
    message: str = ""


@dataclass
class ActionContext:
    """
    Everything an action may touch while it runs.

    Actions only see their parameters, the job's environment and the source
    tree the run was started from. `execute` runs a command in the job's
    environment with the step's timeout and the run's cancellation applied.
    """
    job: str
    step: str
    ref: ActionRef
    params: Mapping[str, str]
    environment: Environment
    source_dir: Path
    env: Mapping[str, str] = field(default_factory=dict)
    deadline: Optional[float] = None
    cancel: Optional[threading.Event] = None

    def param(self, key: str, default: str = "") -> str:
        value = self.params.get(key)
        return default if value is None or value == "" else value

    def flag(self, key: str, default: bool = False) -> bool:
        value = self.params.get(key)
        if value is None or value == "":
            return default
        return value.strip().lower() in ("1", "true", "yes", "on")

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def execute(self, command: str, *, cwd: str | None = None) -> CommandResult:
        return self.environment.execute(
            command,
            cwd=cwd,
            env=self.env,
            timeout=self.remaining(),
            cancel=self.cancel,
        )


ActionFn = Callable[[ActionContext], ActionOutcome]


@dataclass(frozen=True)
class Registration:
    name: str
    fn: ActionFn
    versions: Optional[FrozenSet[str]] = None   # None accepts any version
    description: str = ""

    def accepts(self, version: str) -> bool:
        return self.versions is None or version in self.versions


class ActionRegistry:
    """Maps action names to implementations. The runner only talks to this."""

    def __init__(self, registrations: Iterable[Registration] = ()):
        self._actions: Dict[str, Registration] = {}
        self._lock = threading.Lock()
        for r in registrations:
            self._actions[r.name] = r

    def register(
        self,
        name: str,
        fn: ActionFn,
        *,
        versions: Iterable[str] | None = None,
        description: str = "",
    ) -> None:
        if not description and fn.__doc__:
            description = fn.__doc__.strip().splitlines()[0]
        reg = Registration(
            name=name,
            fn=fn,
            versions=frozenset(versions) if versions is not None else None,
            description=description,
        )
        with self._lock:
            self._actions[name] = reg

    def action(self, name: str, *, versions: Iterable[str] | None = None) -> Callable[[ActionFn], ActionFn]:
        """Decorator form of `register`."""
        def deco(fn: ActionFn) -> ActionFn:
            self.register(name, fn, versions=versions)
            return fn
        return deco

    def resolve(self, ref: ActionRef) -> ActionFn:
        with self._lock:
            reg = self._actions.get(ref.name)
        if reg is None:
            raise UnknownAction(str(ref))
        if not reg.accepts(ref.version):
            allowed = ", ".join(sorted(reg.versions or ()))
            raise UnknownAction(str(ref), reason=f"has no version {ref.version!r} (available: {allowed})")
        return reg.fn

    def copy(self) -> ActionRegistry:
        with self._lock:
            return ActionRegistry(self._actions.values())

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    def items(self) -> List[Tuple[str, Registration]]:
        with self._lock:
            return sorted(self._actions.items())


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustc": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "git": "Install Git or fix PATH.",
}

RUST_COMPONENT_CHECKS = {
    "rustfmt": "cargo fmt --version",
    "clippy": "cargo clippy --version",
}

_CHECKOUT_IGNORE = shutil.ignore_patterns(".git", ".runwright")


def _split_list(value: str) -> List[str]:
    return [part.strip() for part in value.replace("\n", ",").split(",") if part.strip()]


def _check_tools(ctx: ActionContext, checks: List[Tuple[str, str]]) -> ActionOutcome:
    lines: List[str] = []
    for tool, command in checks:
        res = ctx.execute(command)
        if not res.ok:
            hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
            lines.append(res.output())
            return ActionOutcome(False, "\n".join(lines), f"{tool} is not available. {hint}")
        lines.append(res.stdout.strip())
    return ActionOutcome(True, "\n".join(line for line in lines if line))


def checkout(ctx: ActionContext) -> ActionOutcome:
    """Copy the source repository into the job workspace."""
    source = ctx.param("repository", str(ctx.source_dir))
    ref = ctx.param("ref")
    dest = (ctx.environment.workdir / ctx.param("path", ".")).resolve()
    if not ctx.environment.contains(dest):
        return ActionOutcome(False, message=f"path {ctx.param('path')!r} is outside the job workspace")
    dest.mkdir(parents=True, exist_ok=True)

    source_path = Path(source).expanduser()
    is_remote = not source_path.exists()
    if is_remote or git.is_repo_root(source_path):
        git.clone(source, dest, ref=ref or None)
        sha = git.head_sha(cwd=dest)
        return ActionOutcome(True, f"checked out {source} at {git.current_ref(cwd=dest)} ({sha})")

    if ref:
        return ActionOutcome(False, message=f"ref {ref!r} requested but {source} is not a git repository")
    shutil.copytree(source_path, dest, dirs_exist_ok=True, ignore=_CHECKOUT_IGNORE)
    return ActionOutcome(True, f"copied {source_path} into workspace")


def setup_tool(ctx: ActionContext) -> ActionOutcome:
    """Verify a tool (and optional companion tools) is installed."""
    tool = ctx.param("tool")
    if not tool:
        return ActionOutcome(False, message="parameter 'tool' is required")
    checks = [(tool, f"{tool} --version")]
    checks.extend((c, f"{c} --version") for c in _split_list(ctx.param("components")))
    return _check_tools(ctx, checks)


def rust_toolchain(ctx: ActionContext) -> ActionOutcome:
    """Verify a Rust toolchain and its requested components are installed."""
    toolchain = ctx.param("toolchain", "stable")
    rustc = "rustc --version" if toolchain == "stable" else f"rustc +{toolchain} --version"
    checks = [("rustc", rustc), ("cargo", "cargo --version")]
    for component in _split_list(ctx.param("components")):
        checks.append((component, RUST_COMPONENT_CHECKS.get(component, f"{component} --version")))
    return _check_tools(ctx, checks)


def _find_reports(workdir: Path, files: List[str]) -> List[Path]:
    if files:
        return [workdir / f for f in files if (workdir / f).is_file()]
    found: List[Path] = []
    for pattern in ("cobertura.xml", "coverage.xml", "lcov.info", "coverage.json"):
        found.extend(p for p in sorted(workdir.rglob(pattern)) if ".git" not in p.parts)
    return found


def upload_report(ctx: ActionContext) -> ActionOutcome:
    """Upload coverage reports from the workspace to a reporting endpoint."""
    strict = ctx.flag("fail_ci_if_error")
    url = ctx.param("url", os.environ.get("RUNWRIGHT_UPLOAD_URL", ""))
    reports = _find_reports(ctx.environment.workdir, _split_list(ctx.param("files")))

    def problem(message: str) -> ActionOutcome:
        if strict:
            return ActionOutcome(False, message=message)
        return ActionOutcome(True, output=f"warning: {message}")

    if not reports:
        return problem("no coverage reports found in workspace")
    if not url:
        return problem("no upload endpoint configured (set 'url' or RUNWRIGHT_UPLOAD_URL)")

    remaining = ctx.remaining()
    if remaining == 0:
        return problem("step time budget exhausted before upload")
    timeout = 60.0 if remaining is None else remaining
    uploaded: List[str] = []
    for report in reports:
        req = urllib.request.Request(
            url,
            data=report.read_bytes(),
            headers={
                "Content-Type": "application/octet-stream",
                "X-Report-Name": report.name,
                "X-Job-Name": ctx.job,
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            return problem(f"upload of {report.name} failed: HTTP {e.code} {e.reason}")
        except urllib.error.URLError as e:
            return problem(f"could not connect to {url}: {e.reason}")
        uploaded.append(report.name)
    return ActionOutcome(True, output=f"uploaded {', '.join(uploaded)} to {url}")


def default_registry() -> ActionRegistry:
    reg = ActionRegistry()
    reg.register("actions/checkout", checkout)
    reg.register("runwright/setup-tool", setup_tool)
    reg.register("dtolnay/rust-toolchain", rust_toolchain)
    reg.register("codecov/codecov-action", upload_report)
    reg.register("runwright/upload-report", upload_report)
    return reg
