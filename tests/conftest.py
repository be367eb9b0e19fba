"""Shared fixtures: a scripted step executor and a quiet console."""

from __future__ import annotations

import shlex
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from matrixci.model import Step, StepResult
from matrixci.runner import StepRunner
from matrixci.ui.console import Console, set_console


def py(code: str) -> str:
    """Shell command running a Python snippet with the current interpreter."""
    return shlex.join([sys.executable, "-c", code])


class FakeExecutor:
    """
    Stands in for ShellExecutor. Every step passes unless listed in `fail`
    (job name, step name) -> exit code, or in `timeouts`.
    """

    def __init__(
        self,
        fail: Optional[Dict[Tuple[str, str], int]] = None,
        timeouts: Iterable[Tuple[str, str]] = (),
        delay: float = 0.0,
        on_call: Optional[Callable[[str, str], None]] = None,
    ):
        self.fail = dict(fail or {})
        self.timeouts = set(timeouts)
        self.delay = delay
        self.on_call = on_call
        self.calls: List[Tuple[str, str]] = []
        self.envs: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def execute(self, step: Step, index: int, cwd: Path, env: Dict[str, str]) -> StepResult:
        job = env["MATRIXCI_JOB"]
        with self._lock:
            self.calls.append((job, step.name))
            self.envs[job] = dict(env)
        if self.on_call:
            self.on_call(job, step.name)
        if self.delay:
            time.sleep(self.delay)
        if (job, step.name) in self.timeouts:
            return StepResult(name=step.name, index=index, exit_code=None, stderr="timed out\n", timed_out=True)
        code = self.fail.get((job, step.name), 0)
        return StepResult(name=step.name, index=index, exit_code=code, stdout=f"{job}:{step.name}\n")

    def steps_of(self, job: str) -> List[str]:
        return [s for j, s in self.calls if j == job]


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console()
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def fake_executor():
    return FakeExecutor


@pytest.fixture
def runner_factory(tmp_path):
    """Build a Scheduler runner_factory around a given executor."""

    def make(executor):
        return lambda cancel: StepRunner(tmp_path, executor=executor, cancel=cancel)

    return make
