# dag.py
from __future__ import annotations

import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .model import JobSpec, Outcome, ProvisioningUnavailable, SchedulingError, Status
from .provision import Provisioner
from .runner import StepRunner
from .ui.console import get_console


PLATFORM_AXES = ("os", "platform")


class ResultMap:
    """
    JobSpec -> Outcome, written exactly once per job.

    Only the scheduler loop writes; the lock keeps reads made through
    get() consistent with an outcome being recorded.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[JobSpec, Outcome] = {}

    def put(self, job: JobSpec, outcome: Outcome) -> None:
        with self._lock:
            if job in self._data:
                raise SchedulingError("outcome recorded twice", job=job.name)
            self._data[job] = outcome

    def get(self, job: JobSpec) -> Optional[Outcome]:
        with self._lock:
            return self._data.get(job)

    def ordered(self, jobs: Iterable[JobSpec]) -> Dict[JobSpec, Outcome]:
        """Snapshot in the given (submission) order; every job must be present."""
        with self._lock:
            missing = [j.name for j in jobs if j not in self._data]
            if missing:
                raise SchedulingError(f"jobs finished without an outcome: {missing}", missing=missing)
            return {j: self._data[j] for j in jobs}


# ----------------------------------------------------------------------
# DAG build (dependency graph over families)
# ----------------------------------------------------------------------

def build_dag(jobs: List[JobSpec]) -> Tuple[Dict[JobSpec, Set[JobSpec]], Dict[JobSpec, int]]:
    """
    Edges run from every job of a needed family to every job of the family
    that needs it. Jobs of unrelated families share no edges.
    """
    keys = [j.key for j in jobs]
    if len(set(keys)) != len(keys):
        dupes = sorted({jobs[i].name for i, k in enumerate(keys) if keys.count(k) > 1})
        raise SchedulingError(f"Duplicate jobs submitted: {dupes}", duplicates=dupes)

    by_family: Dict[str, List[JobSpec]] = {}
    for j in jobs:
        by_family.setdefault(j.family, []).append(j)

    adj: Dict[JobSpec, Set[JobSpec]] = {j: set() for j in jobs}
    indeg: Dict[JobSpec, int] = {j: 0 for j in jobs}

    for job in jobs:
        for family in job.needs:
            if family not in by_family:
                raise SchedulingError(
                    f"job needs family '{family}' which was not submitted",
                    job=job.name,
                    known=sorted(by_family),
                )
            for dep in by_family[family]:
                if job not in adj[dep]:
                    adj[dep].add(job)
                    indeg[job] += 1

    return adj, indeg


def default_workers(jobs: Iterable[JobSpec]) -> int:
    """
    One worker per platform: the largest number of distinct values seen on
    an os/platform axis. Without such an axis, cpu_count - 1 like any pool.
    """
    platforms: Dict[str, Set[str]] = {}
    for j in jobs:
        for name, value in j.values:
            if name.lower() in PLATFORM_AXES:
                platforms.setdefault(f"{j.family}.{name}", set()).add(value)
    if platforms:
        return max(len(v) for v in platforms.values())
    c = os.cpu_count() or 2
    return max(1, c - 1)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Runs JobSpecs on a bounded thread pool and collects one Outcome each.

    Jobs only wait on jobs of the families they `need`; everything else is
    dispatched as soon as a worker is free. A failing job never stops its
    siblings. cancel() lets in-flight jobs finish their current step and
    turns every job that has not started into a skipped one.
    """

    def __init__(
        self,
        *,
        max_workers: int | None = None,
        repo_root: str = ".",
        provisioner: Optional[Provisioner] = None,
        runner_factory: Optional[Callable[[threading.Event], StepRunner]] = None,
    ):
        self.max_workers = max_workers
        self.provisioner = provisioner or Provisioner()
        self.cancel_event = threading.Event()
        self._runner_factory = runner_factory or (lambda ev: StepRunner(repo_root, cancel=ev))
        self.states: Dict[JobSpec, Status] = {}
        self._states_lock = threading.Lock()

    def cancel(self) -> None:
        get_console().print_info("Cancellation requested: finishing current steps, skipping the rest")
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _set_state(self, job: JobSpec, status: Status) -> None:
        with self._states_lock:
            self.states[job] = status

    def _run_job(self, job: JobSpec, runner: StepRunner) -> Outcome:
        console = get_console()
        if self.cancelled:
            return Outcome.skipped("cancelled")

        try:
            self.provisioner.prepare(job)
        except ProvisioningUnavailable as e:
            console.print_job_skipped(job.name, e.message)
            return Outcome.skipped(f"provisioning unavailable: {e.message}")

        self._set_state(job, Status.RUNNING)
        console.print_job_start(job.name)
        return runner.run(job)

    def _finish(self, results: ResultMap, job: JobSpec, outcome: Outcome) -> None:
        results.put(job, outcome)
        self._set_state(job, outcome.status)
        get_console().print_job_done(job.name, outcome)

    def run(self, jobs: Iterable[JobSpec]) -> Dict[JobSpec, Outcome]:
        """
        Returns an Outcome for every submitted job, ordered as submitted.
        Raises SchedulingError if a job could not be dispatched.
        """
        jobs = list(jobs)
        adj, indeg = build_dag(jobs)
        results = ResultMap()
        for j in jobs:
            self._set_state(j, Status.PENDING)

        max_workers = self.max_workers or default_workers(jobs)
        runner = self._runner_factory(self.cancel_event)

        # submission order = expansion order, so ties dispatch deterministically
        order = {j: i for i, j in enumerate(jobs)}
        ready: List[JobSpec] = [j for j in jobs if indeg[j] == 0]
        in_flight: Dict[Future, JobSpec] = {}

        def release(job: JobSpec) -> None:
            for nxt in sorted(adj[job], key=order.__getitem__):
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    ready.append(nxt)
            ready.sort(key=order.__getitem__)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="matrixci") as pool:
            while ready or in_flight:
                while ready:
                    job = ready.pop(0)
                    blocked = self._blocked_by(job, jobs, results)
                    if blocked:
                        self._finish(results, job, Outcome.skipped(f"needs {blocked}"))
                        release(job)
                        continue
                    if self.cancelled:
                        self._finish(results, job, Outcome.skipped("cancelled"))
                        release(job)
                        continue
                    try:
                        fut = pool.submit(self._run_job, job, runner)
                    except RuntimeError as e:
                        raise SchedulingError(f"could not dispatch job: {e}", job=job.name) from e
                    in_flight[fut] = job

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: order[in_flight[f]]):
                    job = in_flight.pop(fut)
                    try:
                        outcome = fut.result()
                    except Exception as e:
                        # a bug in an executor/provisioner fails this job only
                        outcome = Outcome(status=Status.FAILED, reason=f"{type(e).__name__}: {e}")
                    self._finish(results, job, outcome)
                    release(job)

        return results.ordered(jobs)

    def _blocked_by(self, job: JobSpec, jobs: List[JobSpec], results: ResultMap) -> str | None:
        """The first needed family that did not fully pass, if any."""
        for family in job.needs:
            for dep in jobs:
                if dep.family != family:
                    continue
                outcome = results.get(dep)
                if outcome is None or outcome.status is not Status.PASSED:
                    return family
        return None


def run_jobs(
    jobs: Iterable[JobSpec],
    *,
    max_workers: int | None = None,
    repo_root: str = ".",
    provisioner: Optional[Provisioner] = None,
) -> Dict[JobSpec, Outcome]:
    """Convenience wrapper: schedule and wait for all jobs."""
    return Scheduler(max_workers=max_workers, repo_root=repo_root, provisioner=provisioner).run(jobs)
