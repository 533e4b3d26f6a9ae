from __future__ import annotations

import threading

import pytest

from runwright.actions import ActionOutcome, default_registry
from runwright.config import RunnerConfig
from runwright.runner import PipelineRunner
from runwright.ui.console import Console


class Counter:
    """Thread-safe call counter usable as an action."""

    def __init__(self, success: bool = True):
        self.calls = 0
        self.success = success
        self.params = []
        self._lock = threading.Lock()

    def __call__(self, ctx):
        with self._lock:
            self.calls += 1
            self.params.append(dict(ctx.params))
        return ActionOutcome(self.success, output=f"call {self.calls}", message="" if self.success else "counter says no")


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def source_dir(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "hello.txt").write_text("hello\n")
    return src


@pytest.fixture
def make_runner(tmp_path, registry, source_dir):
    def _make(**config) -> PipelineRunner:
        cfg = RunnerConfig(workdir=str(tmp_path / "work"), **config)
        return PipelineRunner(config=cfg, actions=registry, console=Console(), source_dir=source_dir)
    return _make


@pytest.fixture
def runner(make_runner):
    return make_runner()
