# runner.py
from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .actions import ActionContext, ActionRegistry, default_registry
from .config import RunnerConfig
from .environment import (
    TIMEOUT_EXIT_CODE,
    DockerProvisioner,
    Environment,
    LocalProvisioner,
    Provisioner,
)
from .errors import (
    Cancelled,
    CIError,
    EnvironmentProvisioningFailure,
    StepExecutionFailure,
    UnknownAction,
)
from .model import (
    Event,
    Job,
    JobResult,
    JobStatus,
    RunReport,
    Step,
    StepResult,
    StepStatus,
    Verdict,
    Workflow,
)
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Selection and verdict
# ----------------------------------------------------------------------

def trigger(workflow: Workflow, event: Event | str) -> List[Job]:
    """
    Jobs to run for `event`, in declaration order.

    An event the workflow does not subscribe to selects nothing; that is not
    an error.
    """
    if not isinstance(event, Event):
        event = Event.parse(event)
    if event not in workflow.on:
        return []
    return list(workflow.jobs)


def verdict(results: Iterable[JobResult]) -> Verdict:
    """SUCCESS iff every triggered job succeeded (vacuously true for none)."""
    if all(r.status is JobStatus.SUCCEEDED for r in results):
        return Verdict.SUCCESS
    return Verdict.FAILURE


def provisioner_for(config: RunnerConfig) -> Provisioner:
    if config.provisioner == "docker":
        return DockerProvisioner(base_dir=config.workdir, keep_workdirs=config.keep_workdirs)
    return LocalProvisioner(base_dir=config.workdir, keep_workdirs=config.keep_workdirs)


def _merge(*maps: Mapping[str, str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for m in maps:
        out.update(m)
    return out


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------

class PipelineRunner:
    """
    Runs triggered jobs concurrently, one thread per job.

    Steps inside a job run strictly in order on the job's own environment;
    the first failing step fails the job and every later step is skipped.
    Failures never leave the runner: they are recorded in the JobResult.

    `cancel()` may be called from any thread (or a signal handler). Running
    commands are killed and their steps fail; steps and jobs that had not
    started are skipped. A cancelled runner stays cancelled.
    """

    def __init__(
        self,
        *,
        config: RunnerConfig | None = None,
        provisioner: Provisioner | None = None,
        actions: ActionRegistry | None = None,
        console: Console | None = None,
        source_dir: str | Path = ".",
    ):
        self.config = config or RunnerConfig()
        self.provisioner = provisioner or provisioner_for(self.config)
        self.actions = actions if actions is not None else default_registry()
        self.console = console or get_console()
        self.source_dir = Path(source_dir).resolve()
        self._cancel = threading.Event()

    # ---- cancellation ----

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- selection ----

    def trigger(self, workflow: Workflow, event: Event | str) -> List[Job]:
        return trigger(workflow, event)

    # ---- timeouts ----

    def _job_deadline(self, job: Job, start: float) -> Optional[float]:
        limit = job.timeout if job.timeout is not None else self.config.job_timeout
        return start + limit if limit is not None else None

    def _step_timeout(self, step: Step, deadline: Optional[float]) -> Optional[float]:
        limit = step.timeout if step.timeout is not None else self.config.step_timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            limit = remaining if limit is None else min(limit, remaining)
        return limit

    # ---- step execution ----

    def _cancelled_error(self, job: Job, step: Optional[str], message: str) -> Cancelled:
        return Cancelled(kind="cancelled", job=job.name, step=step, message=message)

    def _timeout_error(self, job: Job, step: Step, timeout: Optional[float]) -> StepExecutionFailure:
        limit = f"{timeout:.1f}s" if timeout and timeout > 0 else "the job's time budget"
        return StepExecutionFailure(
            kind="timeout",
            job=job.name,
            step=step.display_name,
            message=f"step exceeded {limit}",
            exit_code=TIMEOUT_EXIT_CODE,
        )

    def _run_command(self, job: Job, step: Step, env: Environment, result: StepResult, timeout: Optional[float]) -> None:
        res = env.execute(step.run, cwd=step.cwd, env=step.env, timeout=timeout, cancel=self._cancel)
        result.exit_code = res.exit_code
        result.output = res.output(self.config.output_tail)
        if res.cancelled:
            raise self._cancelled_error(job, step.display_name, "run cancelled while the command was running")
        if res.timed_out:
            raise self._timeout_error(job, step, timeout)
        if res.exit_code != 0:
            raise StepExecutionFailure(
                kind="command_failed",
                job=job.name,
                step=step.display_name,
                message=f"command exited with code {res.exit_code}",
                details={"cmd": step.run},
                exit_code=res.exit_code,
            )

    def _run_action(self, job: Job, step: Step, env: Environment, result: StepResult, timeout: Optional[float]) -> None:
        try:
            fn = self.actions.resolve(step.uses)
        except UnknownAction as e:
            raise StepExecutionFailure(
                kind="unknown_action",
                job=job.name,
                step=step.display_name,
                message=str(e),
            ) from e

        ctx = ActionContext(
            job=job.name,
            step=step.display_name,
            ref=step.uses,
            params=step.with_,
            environment=env,
            source_dir=self.source_dir,
            env=step.env,
            deadline=time.monotonic() + timeout if timeout is not None else None,
            cancel=self._cancel,
        )
        try:
            outcome = fn(ctx)
        except Exception as e:
            raise StepExecutionFailure(
                kind="action_error",
                job=job.name,
                step=step.display_name,
                message=f"{type(e).__name__}: {e}",
                details={"action": str(step.uses)},
            ) from e

        output = outcome.output or ""
        tail = self.config.output_tail
        result.output = output[-tail:] if tail else output
        if self._cancel.is_set():
            raise self._cancelled_error(job, step.display_name, "run cancelled while the action was running")
        if ctx.deadline is not None and time.monotonic() > ctx.deadline:
            raise self._timeout_error(job, step, timeout)
        if not outcome.success:
            raise StepExecutionFailure(
                kind="action_failed",
                job=job.name,
                step=step.display_name,
                message=outcome.message or "action reported failure",
                details={"action": str(step.uses)},
            )

    def _run_step(self, job: Job, step: Step, env: Environment, result: StepResult, deadline: Optional[float]) -> None:
        timeout = self._step_timeout(step, deadline)
        if timeout is not None and timeout <= 0:
            raise self._timeout_error(job, step, None)
        if step.run is not None:
            self._run_command(job, step, env, result, timeout)
        else:
            self._run_action(job, step, env, result, timeout)

    # ---- job execution ----

    def _finish(self, result: JobResult, start: float, error: Optional[Exception]) -> JobResult:
        for s in result.steps:
            if s.status is StepStatus.PENDING:
                s.status = StepStatus.SKIPPED
        result.error = error
        result.status = JobStatus.FAILED if error is not None else JobStatus.SUCCEEDED
        result.duration = time.monotonic() - start
        return result

    def run(self, job: Job, *, workflow_env: Mapping[str, str] | None = None) -> JobResult:
        """
        Execute one job on a freshly provisioned environment.

        Returns the job's final status plus one StepResult per declared step,
        in declaration order.
        """
        start = time.monotonic()
        result = JobResult(
            name=job.name,
            runs_on=job.runs_on,
            steps=[StepResult(name=s.display_name, kind=s.kind) for s in job.steps],
        )

        if self._cancel.is_set():
            return self._finish(result, start, self._cancelled_error(job, None, "run cancelled before the job started"))

        result.status = JobStatus.RUNNING
        self.console.print_job_start(job.name, job.runs_on)

        try:
            env = self.provisioner.provision(job, env=_merge(workflow_env or {}, job.env))
        except EnvironmentProvisioningFailure as e:
            self.console.print_warning(str(e).splitlines()[0])
            return self._finish(result, start, e)

        deadline = self._job_deadline(job, start)
        error: Optional[Exception] = None
        try:
            for step, step_result in zip(job.steps, result.steps):
                if self._cancel.is_set():
                    error = self._cancelled_error(job, None, "run cancelled between steps")
                    break

                step_result.status = StepStatus.RUNNING
                self.console.print_step(job.name, step_result.name)
                step_start = time.monotonic()
                try:
                    self._run_step(job, step, env, step_result, deadline)
                    step_result.status = StepStatus.SUCCEEDED
                except CIError as e:
                    step_result.status = StepStatus.FAILED
                    step_result.error = e
                except Exception as e:
                    step_result.status = StepStatus.FAILED
                    step_result.error = StepExecutionFailure(
                        kind="error",
                        job=job.name,
                        step=step_result.name,
                        message=f"{type(e).__name__}: {e}",
                    )
                step_result.duration = time.monotonic() - step_start
                self.console.print_step_result(job.name, step_result)

                if step_result.status is StepStatus.FAILED:
                    error = step_result.error
                    break
        finally:
            env.teardown()

        return self._finish(result, start, error)

    # ---- whole run ----

    def _crashed(self, job: Job, exc: BaseException) -> JobResult:
        result = JobResult(
            name=job.name,
            runs_on=job.runs_on,
            steps=[StepResult(name=s.display_name, kind=s.kind) for s in job.steps],
        )
        err = CIError(kind="runner_error", job=job.name, step=None, message=f"{type(exc).__name__}: {exc}")
        return self._finish(result, time.monotonic(), err)

    def _collect(self, done: Iterable[Future], futures: Mapping[Future, Job], results: Dict[str, JobResult]) -> None:
        for fut in done:
            j = futures[fut]
            if j.name in results:
                continue
            try:
                results[j.name] = fut.result()
            except Exception as e:
                results[j.name] = self._crashed(j, e)
            self.console.print_job_result(results[j.name])

    def execute(self, workflow: Workflow, event: Event | str) -> RunReport:
        """
        Run every job `event` triggers and collect a report.

        Jobs are independent: one job failing never stops another. The report
        lists jobs in declaration order regardless of completion order.
        """
        if not isinstance(event, Event):
            event = Event.parse(event)
        jobs = self.trigger(workflow, event)
        report = RunReport(workflow=workflow.name, event=event)
        self.console.print_run_started(workflow.name, event.value, len(jobs))
        if not jobs:
            return report

        workers = self.config.max_workers or len(jobs)
        results: Dict[str, JobResult] = {}
        interrupted = False
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="runwright-job") as pool:
            futures: Dict[Future, Job] = {
                pool.submit(self.run, j, workflow_env=workflow.env): j for j in jobs
            }
            pending = set(futures)
            while pending:
                try:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    self._collect(done, futures, results)
                except KeyboardInterrupt:
                    interrupted = True
                    self.cancel()
            # futures finished while an interrupt was being handled
            self._collect(futures, futures, results)

        if interrupted:
            self.console.print_info("\nRun interrupted, remaining work cancelled")
        report.jobs = [results[j.name] for j in jobs]
        report.cancelled = self._cancel.is_set()
        return report


def run_workflow(
    workflow: Workflow,
    event: Event | str,
    **runner_kwargs,
) -> RunReport:
    """Convenience: build a PipelineRunner and execute one event."""
    return PipelineRunner(**runner_kwargs).execute(workflow, event)
