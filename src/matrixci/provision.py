# provision.py
from __future__ import annotations

import subprocess
import sys
import threading
from typing import Dict, Iterable, List, Optional

from .model import JobSpec, ProvisioningUnavailable


TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "rustfmt": "Run `rustup component add rustfmt`.",
    "cargo-clippy": "Run `rustup component add clippy`.",
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# Platform label prefix -> sys.platform prefix of a host that can run it.
PLATFORM_HOSTS = {
    "ubuntu": "linux",
    "linux": "linux",
    "windows": "win32",
    "win": "win32",
    "macos": "darwin",
    "darwin": "darwin",
}


class Provisioner:
    """
    Prepares the environment for a job before any of its steps run.

    prepare() raises ProvisioningUnavailable when the job cannot run here;
    the scheduler then records the job as skipped rather than failed.
    """

    def prepare(self, job: JobSpec) -> None:
        return None


class ToolProvisioner(Provisioner):
    """Every tool in job.requires must answer `<tool> --version`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._known: Dict[str, bool] = {}

    def _available(self, tool: str) -> bool:
        with self._lock:
            if tool in self._known:
                return self._known[tool]
        try:
            subprocess.run(
                [tool, "--version"],
                capture_output=True,
                check=True,
            )
            ok = True
        except (subprocess.CalledProcessError, FileNotFoundError, PermissionError):
            ok = False
        with self._lock:
            self._known[tool] = ok
        return ok

    def prepare(self, job: JobSpec) -> None:
        for tool in job.requires:
            if not self._available(tool):
                raise ProvisioningUnavailable(
                    f"{tool} is not available",
                    job=job.name,
                    hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."),
                    tool=tool,
                )


class PlatformProvisioner(Provisioner):
    """
    Jobs whose platform axis names a different OS than the host are
    unavailable locally (there is no VM or container substrate here).
    """

    def __init__(self, axis: str = "os", host: str | None = None):
        self.axis = axis
        self.host = host or sys.platform

    def supports(self, label: str) -> bool:
        low = label.lower()
        for prefix, host_prefix in PLATFORM_HOSTS.items():
            if low.startswith(prefix):
                return self.host.startswith(host_prefix)
        # unknown labels are assumed to be runnable
        return True

    def prepare(self, job: JobSpec) -> None:
        label = job.params.get(self.axis)
        if label is None or self.supports(label):
            return
        raise ProvisioningUnavailable(
            f"platform {label!r} is not available on host {self.host!r}",
            job=job.name,
            axis=self.axis,
        )


class CommandProvisioner(Provisioner):
    """
    Runs a setup command once per value of an axis, e.g.

        CommandProvisioner("rust", "rustup toolchain install {rust}")

    The result is memoised per value: when installing a toolchain fails,
    every job using that toolchain is skipped without retrying.
    """

    def __init__(self, axis: str, command: str, *, timeout: float | None = None):
        self.axis = axis
        self.command = command
        self.timeout = timeout
        self._lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._results: Dict[str, Optional[str]] = {}   # value -> error text (None = ok)

    def _lock_for(self, value: str) -> threading.Lock:
        with self._lock:
            return self._locks.setdefault(value, threading.Lock())

    def _install(self, value: str) -> Optional[str]:
        cmd = self.command.format(**{self.axis: value})
        try:
            proc = subprocess.run(
                cmd,
                shell=True,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return f"`{cmd}` timed out"
        except OSError as e:
            return f"`{cmd}` could not start: {e}"
        if proc.returncode != 0:
            tail = (proc.stderr or proc.stdout or "").strip()[-500:]
            return f"`{cmd}` exited {proc.returncode}: {tail}"
        return None

    def prepare(self, job: JobSpec) -> None:
        value = job.params.get(self.axis)
        if value is None:
            return

        with self._lock_for(value):
            if value not in self._results:
                self._results[value] = self._install(value)
            error = self._results[value]

        if error is not None:
            raise ProvisioningUnavailable(
                f"{self.axis}={value} could not be provisioned",
                job=job.name,
                error=error,
            )


class ChainProvisioner(Provisioner):
    def __init__(self, provisioners: Iterable[Provisioner]):
        self.provisioners: List[Provisioner] = list(provisioners)

    def prepare(self, job: JobSpec) -> None:
        for p in self.provisioners:
            p.prepare(job)


def chain(*provisioners: Provisioner) -> Provisioner:
    return ChainProvisioner(provisioners)
