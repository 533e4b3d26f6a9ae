# cli.py
from __future__ import annotations

import json
import signal
import sys
from pathlib import Path

import click

from runwright.actions import default_registry
from runwright.config import PROVISIONERS, RunnerConfig
from runwright.errors import MalformedDefinition
from runwright.loader import find_workflow_files, load_file
from runwright.model import Event, Workflow
from runwright.runner import PipelineRunner, trigger
from runwright.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 130


def _parse_event(ctx, param, value: str) -> Event:
    try:
        return Event.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from None


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Args:
        workflow_arg: Optional workflow argument from CLI

    Returns:
        Path to workflow file

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  runwright run push --workflow ci.yml",
            )
            sys.exit(EXIT_INVALID)
        return workflow_path

    workflow_files = find_workflow_files(".")

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  runwright.yml / runwright.yaml",
                "  *_workflow.py",
                "  .github/workflows/*.yml",
            ],
            suggestion="Create runwright.yml, or specify a workflow explicitly:\n  runwright run push --workflow ci.yml",
        )
        sys.exit(EXIT_INVALID)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  runwright run push --workflow runwright.yml",
        )
        sys.exit(EXIT_INVALID)

    return workflow_files[0]


def _load_or_exit(workflow_arg: str | None) -> Workflow:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return load_file(workflow_path)
    except MalformedDefinition as e:
        console.print_error(
            "Malformed workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        sys.exit(EXIT_INVALID)
    except (OSError, ValueError) as e:
        console.print_error("Failed to load workflow", str(e))
        sys.exit(EXIT_INVALID)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Echo every step's output, not only failures'")
@click.pass_context
def cli(ctx, debug, verbose):
    """runwright: run declarative CI workflows locally."""
    console = Console(debug=debug, show_output=verbose)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("event", callback=_parse_event)
@click.option("--workflow", default=None, help="Workflow file (.yml, .yaml or .py)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Maximum jobs running at once")
@click.option("--step-timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Default per-step timeout in seconds")
@click.option("--job-timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Default per-job timeout in seconds")
@click.option("--provisioner", default=None, type=click.Choice(PROVISIONERS), help="Where jobs run (default: local)")
@click.option("--workdir", default=None, help="Directory for job workspaces (default: system temp)")
@click.option("--keep-workdirs", is_flag=True, default=False, help="Keep job workspaces after the run")
@click.option("--source", default=".", show_default=True, help="Source tree the checkout action copies")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the run report as JSON")
@click.pass_context
def run(ctx, event, workflow, workers, step_timeout, job_timeout, provisioner, workdir, keep_workdirs, source, report_json):
    """Run the jobs a workflow triggers for EVENT (push, pull_request, ...)."""
    console = get_console()

    try:
        config = RunnerConfig.from_env().override(
            max_workers=workers,
            step_timeout=step_timeout,
            job_timeout=job_timeout,
            provisioner=provisioner,
            workdir=workdir,
            keep_workdirs=keep_workdirs or None,
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_INVALID)

    wf = _load_or_exit(workflow)
    runner = PipelineRunner(config=config, source_dir=source)

    received: list[int] = []

    # Runs on the main thread, possibly while it is printing: no output here.
    def _on_signal(signum, frame):
        received.append(signum)
        runner.cancel()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        report = runner.execute(wf, event)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if received:
        console.print_info(f"\nReceived signal {received[0]}, run cancelled")
    console.print_results(report)

    if report_json:
        Path(report_json).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
        console.print_debug(f"report written to {report_json}")

    if report.cancelled:
        sys.exit(EXIT_CANCELLED)
    sys.exit(report.exit_code)


@cli.command()
@click.argument("event", callback=_parse_event)
@click.option("--workflow", default=None, help="Workflow file (.yml, .yaml or .py)")
def plan(event, workflow):
    """Show which jobs EVENT would trigger, without running anything."""
    console = get_console()
    wf = _load_or_exit(workflow)
    selected = trigger(wf, event)

    console.print_header(f"Plan for '{event.value}' ({wf.name})")
    if not selected:
        triggers = ", ".join(e.value for e in wf.on)
        for j in wf.jobs:
            console.print_plan_job_skipped(j.name, f"workflow triggers on: {triggers}")
        return
    for j in selected:
        console.print_plan_job(j.name, j.runs_on, len(j.steps))


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml, .yaml or .py)")
def validate(workflow):
    """Check a workflow file and list its jobs and steps."""
    console = get_console()
    wf = _load_or_exit(workflow)
    triggers = ", ".join(e.value for e in wf.on)
    console.print_info(f"✓ {wf.name}: {len(wf.jobs)} job(s), triggers on {triggers}")
    for j in wf.jobs:
        console.print_info(f"  {j.name} (runs-on: {j.runs_on})")
        for s in j.steps:
            console.print_info(f"    - [{s.kind}] {s.display_name}")


@cli.command(name="actions")
def list_actions():
    """List the built-in actions a workflow can `uses:`."""
    console = get_console()
    for name, reg in default_registry().items():
        versions = ", ".join(sorted(reg.versions)) if reg.versions else "any version"
        console.print_info(f"{name} ({versions})  {reg.description}")


if __name__ == "__main__":
    cli()
