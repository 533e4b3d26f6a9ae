from __future__ import annotations

import sys
import threading
import time

import pytest

from runwright.actions import ActionOutcome
from runwright.dsl import job, sh, uses, wf
from runwright.environment import TIMEOUT_EXIT_CODE, LocalProvisioner
from runwright.errors import (
    Cancelled,
    EnvironmentProvisioningFailure,
    StepExecutionFailure,
)
from runwright.model import Event, JobResult, JobStatus, StepStatus, Verdict
from runwright.runner import trigger, verdict
from runwright.ui.console import Console

from conftest import Counter

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell commands")


def _statuses(result: JobResult):
    return [s.status for s in result.steps]


class TestTrigger:

    def test_selects_all_jobs_for_subscribed_event(self):
        w = wf("w", job("a", sh("true")), job("b", sh("true")), on=["push", "pull_request"])
        assert [j.name for j in trigger(w, Event.PUSH)] == ["a", "b"]
        assert [j.name for j in trigger(w, "pull-request")] == ["a", "b"]

    def test_unsubscribed_event_selects_nothing(self):
        w = wf("w", job("a", sh("true")), on=["pull_request"])
        assert trigger(w, Event.PUSH) == []


class TestVerdict:

    def test_vacuous_success(self):
        assert verdict([]) is Verdict.SUCCESS
        assert Verdict.SUCCESS.exit_code == 0

    def test_any_failure_fails(self):
        ok = JobResult("a", "x", status=JobStatus.SUCCEEDED)
        bad = JobResult("b", "x", status=JobStatus.FAILED)
        assert verdict([ok, ok]) is Verdict.SUCCESS
        assert verdict([ok, bad]) is Verdict.FAILURE
        assert Verdict.FAILURE.exit_code != 0


class TestScenarios:

    def test_all_steps_succeed(self, runner):
        w = wf("w", job("build", sh("true"), sh("echo two"), sh("exit 0")), on=["push"])
        report = runner.execute(w, "push")

        assert len(report.jobs) == 1
        result = report.jobs[0]
        assert result.status is JobStatus.SUCCEEDED
        assert _statuses(result) == [StepStatus.SUCCEEDED] * 3
        assert report.verdict is Verdict.SUCCESS
        assert report.exit_code == 0

    def test_second_step_fails(self, runner):
        w = wf("w", job("build", sh("true"), sh("exit 3"), sh("true")), on=["push"])
        report = runner.execute(w, Event.PUSH)

        result = report.jobs[0]
        assert _statuses(result) == [StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED]
        assert result.status is JobStatus.FAILED
        assert result.steps[1].exit_code == 3
        assert isinstance(result.steps[1].error, StepExecutionFailure)
        assert result.failed_step is result.steps[1]
        assert report.exit_code != 0

    def test_independent_jobs(self, runner):
        w = wf(
            "w",
            job("a", sh("true"), sh("echo fine")),
            job("b", sh("false"), sh("true")),
            on=["push"],
        )
        report = runner.execute(w, "push")

        assert [j.name for j in report.jobs] == ["a", "b"]
        a, b = report.jobs
        assert a.status is JobStatus.SUCCEEDED
        assert _statuses(a) == [StepStatus.SUCCEEDED, StepStatus.SUCCEEDED]
        assert b.status is JobStatus.FAILED
        assert report.verdict is Verdict.FAILURE

    def test_no_jobs_triggered_is_success(self, runner):
        counter = Counter()
        runner.actions.register("test/count", counter)
        w = wf("w", job("a", uses("test/count@v1")), on=["pull_request"])
        report = runner.execute(w, "push")

        assert report.jobs == []
        assert report.verdict is Verdict.SUCCESS
        assert report.exit_code == 0
        assert counter.calls == 0


class TestFailFast:

    def test_nothing_runs_after_failure(self, runner):
        counter = Counter()
        runner.actions.register("test/count", counter)
        w = wf(
            "w",
            job("a", uses("test/count@v1"), sh("exit 1"), uses("test/count@v1"), uses("test/count@v1")),
            on=["push"],
        )
        result = runner.execute(w, "push").jobs[0]

        assert counter.calls == 1
        assert _statuses(result)[2:] == [StepStatus.SKIPPED, StepStatus.SKIPPED]

    def test_failed_action_skips_rest(self, runner):
        runner.actions.register("test/no", Counter(success=False))
        w = wf("w", job("a", uses("test/no@v1"), sh("touch marker")), on=["push"])
        result = runner.execute(w, "push").jobs[0]

        assert _statuses(result) == [StepStatus.FAILED, StepStatus.SKIPPED]
        assert "counter says no" in str(result.steps[0].error)

    def test_failure_in_one_job_does_not_stop_another(self, runner):
        counter = Counter()
        runner.actions.register("test/count", counter)
        w = wf(
            "w",
            job("fails", sh("exit 2")),
            job("counts", sh("sleep 0.2"), uses("test/count@v1"), uses("test/count@v1")),
            on=["push"],
        )
        report = runner.execute(w, "push")
        assert counter.calls == 2
        assert report.jobs[1].status is JobStatus.SUCCEEDED


class TestSteps:

    def test_output_is_captured(self, runner):
        w = wf("w", job("a", sh("echo out; echo err >&2; exit 4")), on=["push"])
        step = runner.execute(w, "push").jobs[0].steps[0]
        assert "out" in step.output
        assert "err" in step.output
        assert step.exit_code == 4

    def test_environment_variables_layer(self, runner):
        w = wf(
            "w",
            job(
                "a",
                sh('test "$W" = wf && test "$J" = job && test "$S" = step', env={"S": "step"}),
                env={"J": "job"},
            ),
            on=["push"],
            env={"W": "wf"},
        )
        assert runner.execute(w, "push").jobs[0].status is JobStatus.SUCCEEDED

    def test_working_directory(self, runner):
        w = wf("w", job("a", sh("mkdir sub"), sh("pwd", cwd="sub")), on=["push"])
        result = runner.execute(w, "push").jobs[0]
        assert result.status is JobStatus.SUCCEEDED
        assert result.steps[1].output.strip().endswith("/sub")

    def test_missing_working_directory_fails_step(self, runner):
        w = wf("w", job("a", sh("true", cwd="nope")), on=["push"])
        result = runner.execute(w, "push").jobs[0]
        assert result.status is JobStatus.FAILED
        assert "not found" in str(result.steps[0].error)

    def test_working_directory_cannot_leave_workspace(self, runner, tmp_path):
        w = wf("w", job("a", sh("touch escaped.txt", cwd="..")), on=["push"])
        result = runner.execute(w, "push").jobs[0]
        assert result.status is JobStatus.FAILED
        assert "outside the job workspace" in str(result.steps[0].error)
        assert not (tmp_path / "work" / "escaped.txt").exists()

    def test_jobs_do_not_share_workspaces(self, runner):
        w = wf(
            "w",
            job("writer", sh("echo data > shared.txt")),
            job("reader", sh("sleep 0.2"), sh("test ! -e shared.txt")),
            on=["push"],
        )
        report = runner.execute(w, "push")
        assert all(j.succeeded for j in report.jobs)

    def test_workspaces_are_torn_down(self, runner, tmp_path):
        w = wf("w", job("a", sh("touch file")), on=["push"])
        runner.execute(w, "push")
        assert list((tmp_path / "work").iterdir()) == []


class TestActions:

    def test_unknown_action_fails_step(self, runner):
        w = wf("w", job("a", uses("nobody/nothing@v1"), sh("true")), on=["push"])
        result = runner.execute(w, "push").jobs[0]
        assert _statuses(result) == [StepStatus.FAILED, StepStatus.SKIPPED]
        assert result.steps[0].error.kind == "unknown_action"

    def test_unsupported_version_fails_step(self, runner):
        runner.actions.register("test/pinned", Counter(), versions=["v2"])
        w = wf("w", job("a", uses("test/pinned@v1")), on=["push"])
        result = runner.execute(w, "push").jobs[0]
        assert result.status is JobStatus.FAILED
        assert "v1" in str(result.steps[0].error)

    def test_action_receives_parameters(self, runner):
        counter = Counter()
        runner.actions.register("test/count", counter)
        w = wf("w", job("a", uses("test/count@v1", toolchain="stable", verbose=True)), on=["push"])
        runner.execute(w, "push")
        assert counter.params == [{"toolchain": "stable", "verbose": "true"}]

    def test_action_exception_is_captured(self, runner):
        def boom(ctx):
            raise RuntimeError("kaboom")

        runner.actions.register("test/boom", boom)
        w = wf("w", job("a", uses("test/boom@v1")), job("b", sh("true")), on=["push"])
        report = runner.execute(w, "push")

        a, b = report.jobs
        assert a.status is JobStatus.FAILED
        assert a.steps[0].error.kind == "action_error"
        assert "kaboom" in str(a.steps[0].error)
        assert b.status is JobStatus.SUCCEEDED

    def test_action_can_run_commands_in_environment(self, runner):
        def writes(ctx):
            res = ctx.execute("echo from-action > action.txt && cat action.txt")
            return ActionOutcome(res.ok, res.stdout)

        runner.actions.register("test/writes", writes)
        w = wf("w", job("a", uses("test/writes@v1"), sh("grep from-action action.txt")), on=["push"])
        result = runner.execute(w, "push").jobs[0]
        assert result.status is JobStatus.SUCCEEDED
        assert "from-action" in result.steps[0].output


class TestTimeouts:

    def test_step_timeout_is_a_step_failure(self, runner):
        w = wf("w", job("a", sh("sleep 5", timeout=0.3), sh("true")), on=["push"])
        start = time.monotonic()
        result = runner.execute(w, "push").jobs[0]

        assert time.monotonic() - start < 4
        assert _statuses(result) == [StepStatus.FAILED, StepStatus.SKIPPED]
        assert result.steps[0].exit_code == TIMEOUT_EXIT_CODE
        assert result.steps[0].error.kind == "timeout"

    def test_configured_default_step_timeout(self, make_runner):
        runner = make_runner(step_timeout=0.3)
        w = wf("w", job("a", sh("sleep 5")), on=["push"])
        result = runner.execute(w, "push").jobs[0]
        assert result.steps[0].error.kind == "timeout"

    def test_job_timeout_spans_steps(self, make_runner):
        runner = make_runner(job_timeout=0.5)
        w = wf("w", job("a", sh("sleep 0.3"), sh("sleep 5"), sh("true")), on=["push"])
        result = runner.execute(w, "push").jobs[0]
        assert _statuses(result) == [StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED]
        assert result.steps[1].error.kind == "timeout"


class TestCancellation:

    def test_cancel_marks_running_step_failed_and_rest_skipped(self, runner):
        w = wf("w", job("a", sh("true"), sh("sleep 10"), sh("true")), on=["push"])
        timer = threading.Timer(0.5, runner.cancel)
        timer.start()
        try:
            report = runner.execute(w, "push")
        finally:
            timer.cancel()

        result = report.jobs[0]
        assert report.cancelled
        assert _statuses(result) == [StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED]
        assert isinstance(result.steps[1].error, Cancelled)
        assert report.verdict is Verdict.FAILURE

    def test_cancelled_before_start(self, runner):
        runner.cancel()
        w = wf("w", job("a", sh("true"), sh("true")), on=["push"])
        report = runner.execute(w, "push")
        result = report.jobs[0]
        assert result.status is JobStatus.FAILED
        assert isinstance(result.error, Cancelled)
        assert _statuses(result) == [StepStatus.SKIPPED, StepStatus.SKIPPED]

    def test_interrupt_while_reporting_cancels_and_keeps_results(self, runner):
        class InterruptOnce(Console):
            interrupted = False

            def print_job_result(self, result):
                if not self.interrupted:
                    self.interrupted = True
                    raise KeyboardInterrupt
                super().print_job_result(result)

        runner.console = InterruptOnce()
        w = wf("w", job("quick", sh("true")), job("slow", sh("sleep 0.3"), sh("sleep 10")), on=["push"])
        start = time.monotonic()
        report = runner.execute(w, "push")

        assert time.monotonic() - start < 5
        assert report.cancelled
        assert [j.name for j in report.jobs] == ["quick", "slow"]
        assert report.jobs[0].status is JobStatus.SUCCEEDED
        assert report.jobs[1].status is JobStatus.FAILED
        assert isinstance(report.jobs[1].error, Cancelled)


class FailingProvisioner(LocalProvisioner):

    def provision(self, job, env=None):
        raise EnvironmentProvisioningFailure(
            kind="provisioning_failed", job=job.name, step=None, message="no runners left"
        )


class TestProvisioning:

    def test_provisioning_failure_fails_job_without_running_steps(self, runner):
        counter = Counter()
        runner.actions.register("test/count", counter)
        runner.provisioner = FailingProvisioner()
        w = wf("w", job("a", uses("test/count@v1"), sh("true")), on=["push"])
        result = runner.execute(w, "push").jobs[0]

        assert result.status is JobStatus.FAILED
        assert isinstance(result.error, EnvironmentProvisioningFailure)
        assert _statuses(result) == [StepStatus.SKIPPED, StepStatus.SKIPPED]
        assert counter.calls == 0


class TestDeterminism:

    def test_same_workflow_same_event_same_verdicts(self, runner):
        w = wf(
            "w",
            job("a", sh("true"), sh("exit 1")),
            job("b", sh("true")),
            job("c", sh("echo c")),
            on=["push"],
        )
        first = runner.execute(w, "push")
        second = runner.execute(w, "push")

        def summary(report):
            return [(j.name, j.status, _statuses(j)) for j in report.jobs]

        assert summary(first) == summary(second)
        assert first.verdict is second.verdict is Verdict.FAILURE

    def test_report_to_dict(self, runner):
        w = wf("w", job("a", sh("exit 5")), on=["push"])
        data = runner.execute(w, "push").to_dict()
        assert data["verdict"] == "failure"
        assert data["event"] == "push"
        step = data["jobs"][0]["steps"][0]
        assert step["status"] == "failed"
        assert step["exit_code"] == 5
        assert step["error_type"] == "StepExecutionFailure"
