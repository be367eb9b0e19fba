# runner.py
from __future__ import annotations

import os
import runpy
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from .dsl import Matrix
from .model import JobSpec, Outcome, Status, Step, StepFailure, StepResult, axis_env_var
from .ui.console import get_console


OUTPUT_TAIL = 4000  # chars of stdout/stderr kept per step
JOBS_DIR = ".matrixci/jobs"
JOB_DIR_PLACEHOLDER = "{job_dir}"

# Steps run outside the terminal's process group: a Ctrl-C reaches only
# matrixci, which cancels cooperatively while the current step finishes.
if os.name == "nt":
    DETACHED = {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
else:
    DETACHED = {"start_new_session": True}


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Matrix]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Matrix]
      - JOBS = [Matrix, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    families = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            families = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from matrixci import wf, matrix, sh` then "
                    "`def workflow(): return wf(matrix(...), single(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        families = globals_dict["JOBS"]

    if isinstance(families, Matrix):
        families = [families]
    if not isinstance(families, list) or not all(isinstance(f, Matrix) for f in families):
        raise TypeError(
            "Workflow must return/define a List[Matrix]. "
            "Define workflow() -> List[Matrix] or JOBS = [matrix(...), ...]."
        )

    return families


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _tail(text: str | bytes | None) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-OUTPUT_TAIL:]


class ShellExecutor:
    """Runs a step's command through the shell and captures what it printed."""

    def execute(self, step: Step, index: int, cwd: Path, env: Dict[str, str]) -> StepResult:
        started = time.monotonic()
        if not cwd.exists():
            return StepResult(
                name=step.name,
                index=index,
                exit_code=None,
                stderr=f"step '{step.name}' cwd not found: {cwd}\n",
            )

        try:
            proc = subprocess.run(
                step.run,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                capture_output=True,
                timeout=step.timeout,
                **DETACHED,
            )
        except subprocess.TimeoutExpired as e:
            return StepResult(
                name=step.name,
                index=index,
                exit_code=None,
                stdout=_tail(e.stdout),
                stderr=_tail(e.stderr) + f"step '{step.name}' timed out after {step.timeout}s\n",
                duration=time.monotonic() - started,
                timed_out=True,
            )
        except OSError as e:
            return StepResult(
                name=step.name,
                index=index,
                exit_code=None,
                stderr=f"step '{step.name}' could not start: {e}\n",
                duration=time.monotonic() - started,
            )

        return StepResult(
            name=step.name,
            index=index,
            exit_code=proc.returncode,
            stdout=_tail(proc.stdout),
            stderr=_tail(proc.stderr),
            duration=time.monotonic() - started,
        )


def job_env(job: JobSpec, job_dir: Path) -> Dict[str, str]:
    """
    A private copy of the environment for one job: the process env, the
    family's env, and the job's axis values as MATRIXCI_<AXIS>.

    "{job_dir}" inside a family env value becomes the job's scratch dir,
    e.g. CARGO_TARGET_DIR="{job_dir}/target".
    """
    env = os.environ.copy()
    env.update({k: v.replace(JOB_DIR_PLACEHOLDER, str(job_dir)) for k, v in job.env})
    for name, value in job.values:
        env[axis_env_var(name)] = value
    env["MATRIXCI_JOB"] = job.name
    env["MATRIXCI_JOB_DIR"] = str(job_dir)
    return env


class StepRunner:
    """
    Runs one job's steps in declared order and turns them into an Outcome.

    The first halting step that fails ends the job. Steps marked
    allow_failure are recorded and the job carries on. The cancel event is
    checked before every step; once set, no further step starts.
    """

    def __init__(
        self,
        repo_root: str | Path = ".",
        *,
        executor: Optional[ShellExecutor] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.executor = executor or ShellExecutor()
        self.cancel = cancel or threading.Event()

    def job_dir(self, job: JobSpec) -> Path:
        path = self.repo_root / JOBS_DIR / job.slug
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _check(self, job: JobSpec, step: Step, result: StepResult) -> None:
        if not result.ok:
            raise StepFailure(
                job=job.name,
                step=step.name,
                cmd=step.run,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
            )

    def run(self, job: JobSpec) -> Outcome:
        console = get_console()
        env = job_env(job, self.job_dir(job))
        results: List[StepResult] = []

        for index, step in enumerate(job.steps):
            if self.cancel.is_set():
                console.print_debug(f"[{job.name}] cancelled before step '{step.name}'")
                return Outcome.skipped("cancelled", steps=results)

            console.print_step(job.name, step.name)
            cwd = (self.repo_root / (step.cwd or ".")).resolve()
            result = self.executor.execute(step, index, cwd, env)
            results.append(result)

            try:
                self._check(job, step, result)
            except StepFailure as e:
                if not step.halt_on_failure:
                    result.allowed_failure = True
                    console.print_debug(f"[{job.name}] allowed failure: {e.message}")
                    continue
                console.print_failure(job.name, step.name, result)
                return Outcome(
                    status=Status.FAILED,
                    failed_step=index,
                    steps=results,
                    reason=e.message,
                )

        return Outcome(status=Status.PASSED, steps=results)
