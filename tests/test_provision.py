"""Tests for the provisioning hooks that turn unavailable environments into skips."""

from __future__ import annotations

import pytest

from matrixci.dsl import axis, matrix, sh, single
from matrixci.model import ProvisioningUnavailable
from matrixci.provision import CommandProvisioner, PlatformProvisioner, ToolProvisioner, chain

from conftest import py


def os_jobs():
    return matrix(
        "build",
        axis("os", ["ubuntu-latest", "windows-latest", "macOS-latest", "freebsd"]),
        steps=[sh("check", "c")],
    ).expand()


class TestPlatformProvisioner:
    @pytest.mark.parametrize(
        "host, runnable",
        [
            ("linux", ["ubuntu-latest", "freebsd"]),
            ("win32", ["windows-latest", "freebsd"]),
            ("darwin", ["macOS-latest", "freebsd"]),
        ],
    )
    def test_only_matching_host_runs(self, host, runnable) -> None:
        prov = PlatformProvisioner(axis="os", host=host)
        ok = []
        for job in os_jobs():
            try:
                prov.prepare(job)
                ok.append(job.params["os"])
            except ProvisioningUnavailable as e:
                assert host in e.message
        assert ok == runnable

    def test_jobs_without_platform_axis_run(self) -> None:
        PlatformProvisioner(axis="os", host="linux").prepare(single("fmt", sh("f", "f")).expand()[0])


class TestToolProvisioner:
    def test_missing_tool_is_unavailable_with_hint(self) -> None:
        job = single("fmt", sh("f", "f"), requires=["definitely-not-a-real-tool-xyz"]).expand()[0]
        with pytest.raises(ProvisioningUnavailable) as info:
            ToolProvisioner().prepare(job)
        assert info.value.details["tool"] == "definitely-not-a-real-tool-xyz"
        assert "hint" in info.value.details

    def test_available_tool_passes(self, monkeypatch) -> None:
        prov = ToolProvisioner()
        monkeypatch.setattr(prov, "_available", lambda tool: True)
        prov.prepare(single("fmt", sh("f", "f"), requires=["cargo"]).expand()[0])


class TestCommandProvisioner:
    def jobs(self):
        return matrix(
            "build",
            axis("rust", ["stable", "nightly"]),
            axis("features", ["default", "no_std"]),
            steps=[sh("check", "c")],
        ).expand()

    def test_runs_once_per_value_and_memoises_failure(self, tmp_path) -> None:
        log = tmp_path / "installs.log"
        cmd = py(
            "import sys; "
            f"open({str(log)!r}, 'a').write(sys.argv[1] + '\\n'); "
            "sys.exit(1 if sys.argv[1] == 'nightly' else 0)"
        ) + " {rust}"
        prov = CommandProvisioner("rust", cmd)

        skipped = []
        for job in self.jobs():
            try:
                prov.prepare(job)
            except ProvisioningUnavailable:
                skipped.append(job.name)

        assert skipped == ["build[nightly, default]", "build[nightly, no_std]"]
        assert log.read_text().splitlines() == ["stable", "nightly"]

    def test_chain_stops_at_first_unavailable(self) -> None:
        calls = []

        class Record(PlatformProvisioner):
            def prepare(self, job):
                calls.append(job.name)

        job = os_jobs()[1]
        with pytest.raises(ProvisioningUnavailable):
            chain(PlatformProvisioner(host="linux"), Record()).prepare(job)
        assert calls == []
