# model.py
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    timeout: float | None = None       # seconds; exceeding it fails the step
    halt_on_failure: bool = True       # False -> failure is recorded but the job goes on


ENV_PREFIX = "MATRIXCI_"
RESERVED_ENV = ("MATRIXCI_JOB", "MATRIXCI_JOB_DIR")


def axis_env_var(name: str) -> str:
    """Environment variable carrying an axis value into a job, e.g. MATRIXCI_FEATURES."""
    return ENV_PREFIX + name.upper().replace("-", "_")


@dataclass(frozen=True)
class Axis:
    """
    One dimension of a build matrix.

    `values` are the labels that identify a job (e.g. "no_std").
    `args` optionally maps a label to the text substituted into step
    commands (e.g. "no_std" -> "--no-default-features").
    """
    name: str
    values: Tuple[str, ...]
    args: Tuple[Tuple[str, str], ...] = ()

    def arg(self, label: str) -> str:
        return dict(self.args).get(label, label)


@dataclass(frozen=True)
class JobSpec:
    """
    One concrete combination of axis values plus its ordered steps.

    Identity is (family, values); specs are immutable and hashable so they
    can key the result mapping directly.
    """
    family: str
    values: Tuple[Tuple[str, str], ...]
    steps: Tuple[Step, ...]
    env: Tuple[Tuple[str, str], ...] = ()
    requires: Tuple[str, ...] = ()
    needs: Tuple[str, ...] = ()

    @property
    def key(self) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        return self.family, self.values

    @property
    def name(self) -> str:
        if not self.values:
            return self.family
        return f"{self.family}[{', '.join(v for _, v in self.values)}]"

    @property
    def params(self) -> Dict[str, str]:
        return dict(self.values)

    @property
    def slug(self) -> str:
        """Directory-safe name; the key digest keeps it unique per job."""
        parts = [self.family] + [v for _, v in self.values]
        readable = "-".join("".join(c if c.isalnum() or c in "._" else "_" for c in p) for p in parts)
        digest = hashlib.sha1(repr(self.key).encode("utf-8")).hexdigest()[:8]
        return f"{readable}-{digest}"

    def __str__(self) -> str:
        return self.name


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (Status.PASSED, Status.FAILED, Status.SKIPPED)


@dataclass
class StepResult:
    """What one executed step produced (kept whether it passed or not)."""
    name: str
    index: int
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    allowed_failure: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "".join(part for part in (self.stdout, self.stderr) if part)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "index": self.index,
            "exit_code": self.exit_code,
            "ok": self.ok,
            "timed_out": self.timed_out,
            "allowed_failure": self.allowed_failure,
            "duration": round(self.duration, 3),
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass
class Outcome:
    """
    Result of running one JobSpec.

    failed_step is the index of the first halting step that failed, and is
    only ever set when status is FAILED.
    """
    status: Status
    failed_step: Optional[int] = None
    steps: List[StepResult] = field(default_factory=list)
    reason: str | None = None

    @classmethod
    def skipped(cls, reason: str, steps: List[StepResult] | None = None) -> Outcome:
        return cls(status=Status.SKIPPED, reason=reason, steps=list(steps or []))

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "failed_step": self.failed_step,
            "reason": self.reason,
            "steps": [s.to_dict() for s in self.steps],
        }


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON report
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Malformed axis/step declarations. Fatal: no job runs."""

    def __init__(self, message: str, **details):
        super().__init__(kind="configuration", message=message, details=details)


class SchedulingError(CIError):
    """The scheduler could not dispatch (or account for) a job."""

    def __init__(self, message: str, job: str | None = None, **details):
        super().__init__(kind="scheduling", message=message, job=job, details=details)


class StepFailure(CIError):
    """A step exited non-zero or ran past its timeout."""

    def __init__(self, job: str, step: str, cmd: str, exit_code: int | None, timed_out: bool = False):
        message = "timed out" if timed_out else f"failed (exit={exit_code})"
        super().__init__(
            kind="step_failure",
            message=f"step '{step}' {message}",
            job=job,
            step=step,
            details={"cmd": cmd},
        )
        self.cmd = cmd
        self.exit_code = exit_code
        self.timed_out = timed_out


class ProvisioningUnavailable(CIError):
    """The environment for a job could not be prepared; the job is skipped."""

    def __init__(self, message: str, job: str | None = None, hint: str | None = None, **details):
        if hint:
            details["hint"] = hint
        super().__init__(kind="provisioning_unavailable", message=message, job=job, details=details)
