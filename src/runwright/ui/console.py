"""Console output formatting utilities for runwright."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from runwright.model import JobResult, RunReport, StepResult

_STATUS_MARKS = {
    "succeeded": "✓",
    "failed": "✗",
    "skipped": "⏭",
    "pending": "·",
    "running": "▶",
}


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, show_output: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If True, echo each step's captured output, not only failures'
        """
        self.debug = debug
        self.show_output = show_output
        self._lock = threading.RLock()

    def _print(self, *lines: str, file=None) -> None:
        with self._lock:
            for line in lines:
                print(line, file=file or sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(self, workflow: str, event: str, job_count: int) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan_job(self, name: str, runs_on: str, step_count: int) -> None:
        """Print a job selected for this run."""
        self._print(f"  ✓ {name} (runs-on: {runs_on}, {step_count} steps)")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print a job not selected for this run."""
        self._print(f"  ⏭ {name} ({reason})")

    def print_job_start(self, name: str, runs_on: str) -> None:
        self._print(f"[{name}] JOB STARTED on {runs_on}")

    def print_step(self, job: str, name: str) -> None:
        self._print(f"[{job}] ▶ {name}")

    def print_step_result(self, job: str, result: StepResult) -> None:
        mark = _STATUS_MARKS.get(result.status.value, "?")
        line = f"[{job}] {mark} {result.name} ({result.status.value}, {result.duration:.1f}s)"
        lines = [line]
        failed = result.status.value == "failed"
        if failed and result.error is not None:
            first = str(result.error).split("\n")[0]
            lines.append(f"[{job}]   {first}")
        if result.output and (failed or self.show_output or self.debug):
            for out_line in result.output.rstrip().splitlines():
                lines.append(f"[{job}]   | {out_line}")
        self._print(*lines)

    def print_job_result(self, result: JobResult) -> None:
        status = result.status.value.upper()
        self._print(f"[{result.name}] JOB {status} ({result.duration:.1f}s)")

    def print_results(self, report: RunReport) -> None:
        """Print final results summary with a per-step breakdown."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        if not report.jobs:
            lines.append(f"  no jobs triggered by '{report.event.value}'")
        for job in report.jobs:
            lines.append(f"  {job.name}: {job.status.value.upper()}")
            if job.error is not None and job.failed_step is None:
                lines.append(f"    error: {str(job.error).splitlines()[0]}")
            for step in job.steps:
                mark = _STATUS_MARKS.get(step.status.value, "?")
                suffix = ""
                if step.exit_code not in (None, 0):
                    suffix = f" (exit {step.exit_code})"
                lines.append(f"    {mark} {step.name}: {step.status.value}{suffix}")
        lines.append("")
        if report.cancelled:
            lines.append("RUN CANCELLED")
        lines.append(f"VERDICT: {report.verdict.value.upper()}")
        self._print(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            self._print(text.rstrip(), file=sys.stderr)
        else:
            self._print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_warning(self, message: str) -> None:
        self._print(f"WARNING: {message}", file=sys.stderr)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
