# runwright_workflow.py
# Workflow for runwright itself: lint, format check and tests.
from __future__ import annotations

from runwright import wf, job, sh, uses


def workflow():
    return wf(
        "runwright",
        # Lint job - ruff over the sources and tests
        job(
            "lint",
            uses("actions/checkout@v4"),
            uses("runwright/setup-tool@v1", tool="ruff"),
            sh("ruff check src tests", name="Ruff check"),
            sh("ruff format --check src tests", name="Ruff format check"),
        ),

        # Test job - install the package and run pytest
        job(
            "test",
            uses("actions/checkout@v4"),
            sh("python -m pip install -e '.[test]'", name="Install package"),
            sh("python -m pytest -q", name="Run pytest"),
            timeout=15 * 60,
        ),
        on=["push", "pull_request"],
    )
