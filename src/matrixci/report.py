# report.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Tuple

from .model import JobSpec, Outcome, SchedulingError, Status


@dataclass
class Report:
    """
    Final verdict plus every job's outcome, in matrix expansion order.

    `passed` is False iff at least one outcome failed; skipped jobs are
    listed and counted but do not fail the run.
    """
    entries: List[Tuple[JobSpec, Outcome]] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not any(o.status is Status.FAILED for _, o in self.entries)

    @property
    def verdict(self) -> Status:
        return Status.PASSED if self.passed else Status.FAILED

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in (Status.PASSED, Status.FAILED, Status.SKIPPED)}
        for _, o in self.entries:
            out[o.status.value] += 1
        return out

    def outcome(self, job: JobSpec) -> Outcome:
        for j, o in self.entries:
            if j == job:
                return o
        raise KeyError(job.name)

    def skipped(self) -> List[Tuple[JobSpec, Outcome]]:
        return [(j, o) for j, o in self.entries if o.status is Status.SKIPPED]

    def to_dict(self, *, include_output: bool = True) -> dict:
        jobs = []
        for job, outcome in self.entries:
            data = outcome.to_dict()
            if not include_output:
                for s in data["steps"]:
                    s.pop("stdout", None)
                    s.pop("stderr", None)
            jobs.append({
                "name": job.name,
                "family": job.family,
                "values": dict(job.values),
                "declared_steps": [s.name for s in job.steps],
                **data,
            })
        return {
            "verdict": self.verdict.value,
            "counts": self.counts(),
            "jobs": jobs,
        }

    def to_json(self, *, include_output: bool = True) -> str:
        return json.dumps(self.to_dict(include_output=include_output), indent=2)

    def write(self, path: str | Path) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(self.to_json() + "\n", encoding="utf-8")
        return p


def aggregate(jobs: Iterable[JobSpec], results: Mapping[JobSpec, Outcome]) -> Report:
    """
    Build the Report in the order `jobs` were expanded, independent of the
    order they finished in. Every job must have an outcome.
    """
    jobs = list(jobs)
    missing = [j.name for j in jobs if j not in results]
    if missing:
        raise SchedulingError(f"no outcome for jobs: {missing}", missing=missing)

    submitted = set(jobs)
    unknown = [j.name for j in results if j not in submitted]
    if unknown:
        raise SchedulingError(f"outcomes for jobs that were never submitted: {unknown}", unknown=unknown)

    return Report(entries=[(j, results[j]) for j in jobs])
