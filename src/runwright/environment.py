# environment.py
from __future__ import annotations

import os
import re
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .errors import EnvironmentProvisioningFailure
from .model import Job

# Exit code reported for a command killed by a timeout (same as coreutils `timeout`).
TIMEOUT_EXIT_CODE = 124
# Exit code reported for a command killed by cancellation (128 + SIGINT).
CANCELLED_EXIT_CODE = 130

_POLL_INTERVAL = 0.05

# runs-on labels with a known container image
RUNNER_IMAGES: Dict[str, str] = {
    "ubuntu-latest": "ubuntu:latest",
    "ubuntu-24.04": "ubuntu:24.04",
    "ubuntu-22.04": "ubuntu:22.04",
    "ubuntu-20.04": "ubuntu:20.04",
}


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    def output(self, tail: int = 4000) -> str:
        text = self.stdout
        if self.stderr:
            text = f"{text}\n{self.stderr}" if text else self.stderr
        return text[-tail:] if tail else text


def _kill(proc: subprocess.Popen) -> None:
    # Commands run in their own session so the whole process group goes down,
    # not just the shell.
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    proc.kill()


def _wait(
    proc: subprocess.Popen,
    timeout: Optional[float],
    cancel: Optional[threading.Event],
    kill: Callable[[], None],
) -> tuple[str, str, bool, bool]:
    deadline = time.monotonic() + timeout if timeout is not None else None
    while True:
        try:
            out, err = proc.communicate(timeout=_POLL_INTERVAL)
            return out or "", err or "", False, False
        except subprocess.TimeoutExpired:
            cancelled = cancel is not None and cancel.is_set()
            timed_out = deadline is not None and time.monotonic() >= deadline
            if cancelled or timed_out:
                kill()
                out, err = proc.communicate()
                return out or "", err or "", timed_out and not cancelled, cancelled


class Environment:
    """
    An isolated execution environment for one job.

    `workdir` is private to the job. `env` holds the variables every command
    sees on top of the host environment.
    """

    def __init__(self, label: str, workdir: Path, env: Mapping[str, str] | None = None, keep: bool = False):
        self.label = label
        self.workdir = Path(workdir)
        self.env: Dict[str, str] = dict(env or {})
        self.keep = keep

    def contains(self, path: Path) -> bool:
        """True if `path` (resolved) lies inside this job's workspace."""
        return path.resolve().is_relative_to(self.workdir.resolve())

    def resolve_cwd(self, cwd: str | None) -> Path:
        path = (self.workdir / (cwd or ".")).resolve()
        if not self.contains(path):
            raise ValueError(f"working directory {cwd!r} is outside the job workspace")
        if not path.exists():
            raise FileNotFoundError(f"working directory not found: {path}")
        return path

    def _argv(self, command: str, cwd: Path, extra: Mapping[str, str]) -> tuple[List[str] | str, bool]:
        return command, True

    def _abort(self, proc: subprocess.Popen, argv: List[str] | str) -> None:
        _kill(proc)

    def _process_env(self, extra: Mapping[str, str]) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(extra)
        env["RUNWRIGHT_WORKSPACE"] = str(self.workdir)
        return env

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        """Run `command` through the shell and wait for it, honoring timeout and cancellation."""
        start = time.monotonic()
        if cancel is not None and cancel.is_set():
            return CommandResult(CANCELLED_EXIT_CODE, "", "cancelled before start", 0.0, cancelled=True)

        run_cwd = self.resolve_cwd(cwd)
        extra = dict(self.env)
        extra.update(env or {})
        process_env = self._process_env(extra)
        argv, shell = self._argv(command, run_cwd, extra)

        proc = subprocess.Popen(
            argv,
            shell=shell,
            cwd=str(run_cwd) if shell else None,
            env=process_env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        out, err, timed_out, cancelled = _wait(proc, timeout, cancel, lambda: self._abort(proc, argv))

        if cancelled:
            exit_code = CANCELLED_EXIT_CODE
        elif timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        else:
            exit_code = proc.returncode
        return CommandResult(
            exit_code=exit_code,
            stdout=out,
            stderr=err,
            duration=time.monotonic() - start,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def teardown(self) -> None:
        if not self.keep:
            shutil.rmtree(self.workdir, ignore_errors=True)


class DockerEnvironment(Environment):
    """Runs each command in a throwaway container with the workspace mounted at /workspace."""

    container_workdir = "/workspace"

    def __init__(self, label: str, workdir: Path, image: str, env: Mapping[str, str] | None = None, keep: bool = False):
        super().__init__(label, workdir, env=env, keep=keep)
        self.image = image

    def _argv(self, command: str, cwd: Path, extra: Mapping[str, str]) -> tuple[List[str] | str, bool]:
        rel = cwd.relative_to(self.workdir.resolve()).as_posix()
        container_cwd = self.container_workdir if rel == "." else f"{self.container_workdir}/{rel}"
        name = f"{self.workdir.name}-{uuid.uuid4().hex[:8]}"
        cmd = [
            "docker", "run", "--rm", "--name", name,
            "-v", f"{self.workdir.resolve()}:{self.container_workdir}", "-w", container_cwd,
        ]
        # only the workflow's variables reach the container, not the host environment
        for key, value in extra.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend(["-e", f"RUNWRIGHT_WORKSPACE={self.container_workdir}"])
        cmd.extend([self.image, "sh", "-c", command])
        return cmd, False

    def _abort(self, proc: subprocess.Popen, argv: List[str] | str) -> None:
        # Killing the docker client leaves the container running.
        name = argv[argv.index("--name") + 1]
        try:
            subprocess.run(["docker", "kill", name], capture_output=True, timeout=30)
        finally:
            _kill(proc)


# ----------------------------------------------------------------------
# Provisioners
# ----------------------------------------------------------------------

class Provisioner:
    """Creates a fresh, isolated environment for each job."""

    def provision(self, job: Job, env: Mapping[str, str] | None = None) -> Environment:
        raise NotImplementedError


class LocalProvisioner(Provisioner):
    """
    Runs jobs on the host in a private temporary directory.

    The job's `runs_on` label is recorded but not enforced.
    """

    def __init__(self, base_dir: str | Path | None = None, keep_workdirs: bool = False):
        self.base_dir = Path(base_dir) if base_dir else None
        self.keep_workdirs = keep_workdirs

    def _make_workdir(self, job: Job) -> Path:
        slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", job.name)
        try:
            if self.base_dir is not None:
                self.base_dir.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix=f"runwright-{slug}-", dir=self.base_dir))
        except OSError as e:
            raise EnvironmentProvisioningFailure(
                kind="provisioning_failed",
                job=job.name,
                step=None,
                message=f"could not create workspace: {e}",
                details={"runs_on": job.runs_on},
            ) from e

    def provision(self, job: Job, env: Mapping[str, str] | None = None) -> Environment:
        workdir = self._make_workdir(job)
        return Environment(job.runs_on, workdir, env=env, keep=self.keep_workdirs)


class DockerProvisioner(LocalProvisioner):
    """Maps `runs_on` labels to container images; each job gets its own workspace."""

    def __init__(
        self,
        images: Mapping[str, str] | None = None,
        base_dir: str | Path | None = None,
        keep_workdirs: bool = False,
    ):
        super().__init__(base_dir=base_dir, keep_workdirs=keep_workdirs)
        self.images = dict(RUNNER_IMAGES)
        self.images.update(images or {})

    def image_for(self, label: str) -> str:
        return self.images.get(label, label)

    def _check_docker_available(self, job: Job) -> None:
        try:
            subprocess.run(["docker", "--version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise EnvironmentProvisioningFailure(
                kind="docker_unavailable",
                job=job.name,
                step=None,
                message="Docker is not available",
                details={"hint": "Install Docker and ensure the daemon is running."},
            ) from e

    def provision(self, job: Job, env: Mapping[str, str] | None = None) -> Environment:
        self._check_docker_available(job)
        workdir = self._make_workdir(job)
        return DockerEnvironment(job.runs_on, workdir, self.image_for(job.runs_on), env=env, keep=self.keep_workdirs)
