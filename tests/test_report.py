"""Tests for result aggregation and the JSON report."""

from __future__ import annotations

import itertools
import json

import pytest

from matrixci.dsl import axis, matrix, sh
from matrixci.model import Outcome, SchedulingError, Status, StepResult
from matrixci.report import Report, aggregate


def jobs():
    return matrix(
        "build",
        axis("os", ["linux", "macos"]),
        axis("features", ["default", "no_std"]),
        steps=[sh("check", "c"), sh("test", "t")],
    ).expand()


def outcome(status: Status) -> Outcome:
    if status is Status.FAILED:
        return Outcome(
            status=status,
            failed_step=0,
            steps=[StepResult(name="check", index=0, exit_code=1, stderr="error[E0433]\n")],
            reason="step 'check' failed (exit=1)",
        )
    if status is Status.SKIPPED:
        return Outcome.skipped("provisioning unavailable: no macos host")
    return Outcome(status=status, steps=[StepResult(name="check", index=0, exit_code=0, stdout="ok\n")])


class TestVerdict:
    @pytest.mark.parametrize(
        "statuses",
        list(itertools.product([Status.PASSED, Status.FAILED, Status.SKIPPED], repeat=4)),
    )
    def test_failed_iff_any_outcome_failed(self, statuses) -> None:
        js = jobs()
        report = aggregate(js, {j: outcome(s) for j, s in zip(js, statuses)})
        assert report.passed is (Status.FAILED not in statuses)
        assert report.exit_code == (0 if report.passed else 1)

    def test_empty_report_passes(self) -> None:
        assert Report().passed is True


class TestAggregate:
    def test_order_follows_expansion_not_completion(self) -> None:
        js = jobs()
        finished = {j: outcome(Status.PASSED) for j in reversed(js)}
        report = aggregate(js, finished)
        assert [j for j, _ in report.entries] == js

    def test_missing_outcome_rejected(self) -> None:
        js = jobs()
        with pytest.raises(SchedulingError, match="no outcome"):
            aggregate(js, {j: outcome(Status.PASSED) for j in js[:-1]})

    def test_unknown_outcome_rejected(self) -> None:
        js = jobs()
        with pytest.raises(SchedulingError, match="never submitted"):
            aggregate(js[:2], {j: outcome(Status.PASSED) for j in js})

    def test_skipped_is_distinguishable(self) -> None:
        js = jobs()
        statuses = [Status.PASSED, Status.SKIPPED, Status.SKIPPED, Status.PASSED]
        report = aggregate(js, {j: outcome(s) for j, s in zip(js, statuses)})

        assert report.counts() == {"passed": 2, "failed": 0, "skipped": 2}
        assert [j.name for j, _ in report.skipped()] == ["build[linux, no_std]", "build[macos, default]"]
        assert report.outcome(js[1]).reason.startswith("provisioning unavailable")


class TestSerialisation:
    def test_to_dict_shape(self) -> None:
        js = jobs()
        statuses = [Status.PASSED, Status.FAILED, Status.SKIPPED, Status.PASSED]
        data = aggregate(js, {j: outcome(s) for j, s in zip(js, statuses)}).to_dict()

        assert data["verdict"] == "failed"
        assert data["counts"] == {"passed": 2, "failed": 1, "skipped": 1}
        failed = data["jobs"][1]
        assert failed["name"] == "build[linux, no_std]"
        assert failed["values"] == {"os": "linux", "features": "no_std"}
        assert failed["steps"][0]["stderr"] == "error[E0433]\n"
        assert failed["failed_step"] == 0

    def test_json_is_stable(self, tmp_path) -> None:
        js = jobs()
        results = {j: outcome(Status.PASSED) for j in js}
        first = aggregate(js, results).to_json()
        second = aggregate(js, dict(reversed(list(results.items())))).to_json()
        assert first == second

    def test_without_output(self) -> None:
        js = jobs()
        data = aggregate(js, {j: outcome(Status.PASSED) for j in js}).to_dict(include_output=False)
        assert "stdout" not in data["jobs"][0]["steps"][0]

    def test_write(self, tmp_path) -> None:
        js = jobs()
        path = aggregate(js, {j: outcome(Status.PASSED) for j in js}).write(tmp_path / "out" / "report.json")
        assert json.loads(path.read_text())["verdict"] == "passed"
