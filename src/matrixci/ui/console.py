"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..model import Outcome, StepResult
    from ..report import Report


STATUS_MARKS = {
    "passed": "✓",
    "failed": "✗",
    "skipped": "⏭",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, verbose: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            verbose: If True, print captured step output for every job
        """
        self.debug = debug
        self.verbose = verbose
        # workers print concurrently; keep multi-line blocks together.
        # Reentrant: the SIGINT handler prints from the main thread.
        self._lock = threading.RLock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        workers: int | None = None,
    ) -> None:
        """Print run start information."""
        lines = [
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
        ]
        if workers is not None:
            lines.append(f"Workers: {workers}")
        self._emit(*lines, "")

    def print_plan_job(self, name: str, steps: list[str]) -> None:
        """Print one expanded job of the plan."""
        self._emit(f"  {name}: {' -> '.join(steps)}")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._emit(f"JOB STARTED: {name}")

    def print_step(self, job: str, step: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] ▶ {step}")

    def print_failure(self, job: str, step: str, result: StepResult) -> None:
        """Print a failed step, with the tail of its output."""
        lines = [f"STEP FAILED: [{job}] {step}"]
        if result.timed_out:
            lines.append("Reason: timed out")
        elif result.exit_code is not None:
            lines.append(f"Exit code: {result.exit_code}")
        output = result.output.strip()
        if output:
            shown = output if self.debug else "\n".join(output.splitlines()[-20:])
            lines.extend(f"  | {line}" for line in shown.splitlines())
        self._emit(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._emit(f"JOB SKIPPED: {name} ({reason})")

    def print_job_done(self, name: str, outcome: Outcome) -> None:
        """Print a job reaching its terminal state."""
        mark = STATUS_MARKS.get(outcome.status.value, "?")
        line = f"{mark} {name}: {outcome.status.value}"
        if outcome.failed_step is not None:
            line += f" at step {outcome.failed_step}"
        elif outcome.reason:
            line += f" ({outcome.reason})"
        lines = [line]
        if self.verbose:
            for s in outcome.steps:
                lines.append(f"  -- {s.name} (exit={s.exit_code})")
                lines.extend(f"  | {text}" for text in s.output.rstrip().splitlines())
        self._emit(*lines)

    def print_results(self, report: Report) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job, outcome in report.entries:
            status_display = outcome.status.value.upper()
            if outcome.failed_step is not None:
                step = job.steps[outcome.failed_step].name
                status_display += f" @ step {outcome.failed_step} ({step})"
            elif outcome.status.value == "skipped" and outcome.reason:
                status_display += f" ({outcome.reason})"
            lines.append(f"  {job.name}: {status_display}")
        counts = report.counts()
        lines.append("-" * 40)
        lines.append(
            f"VERDICT: {report.verdict.value.upper()} "
            f"(passed={counts['passed']} failed={counts['failed']} skipped={counts['skipped']})"
        )
        self._emit(*lines)

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
        self._emit(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
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
