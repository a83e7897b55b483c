"""Environment lifecycle interface consumed by the orchestrator.

The orchestrator never talks to a container runtime directly. It drives an
:class:`EnvironmentAdapter`, which starts and stops services described by a
:class:`ContainerSpec`, executes commands inside them and waits for health.
Process control of the JVM target (JFR recordings, graceful termination) is
layered on top of ``exec`` so adapters only implement the primitives.
"""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

import requests

from .errors import RecordingError

LOGGER = logging.getLogger("overhead.environment")

TARGET_PID = "1"
DEFAULT_POLL_INTERVAL_S = 0.5


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to start one service of the benchmark stack."""

    image: str
    name: str
    command: Sequence[str] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    network_aliases: Sequence[str] = ()
    exposed_ports: Sequence[int] = ()
    volumes: Mapping[str, str] = field(default_factory=dict)
    copy_files: Mapping[str, str] = field(default_factory=dict)
    user: str | None = None

    def describe(self) -> str:
        return f"{self.name} ({self.image})"


@dataclass
class ContainerHandle:
    """Reference to a started service; ``ref`` is adapter specific."""

    spec: ContainerSpec
    ref: Any = None


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


HealthCheck = Callable[["EnvironmentAdapter", ContainerHandle], bool]


class EnvironmentAdapter(abc.ABC):
    """Start/stop/exec/await-healthy primitives over externally run services."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ) -> None:
        self.clock = clock
        self.sleep = sleep
        self.poll_interval_s = poll_interval_s

    @abc.abstractmethod
    def start(self, spec: ContainerSpec) -> ContainerHandle:
        """Start a long-lived service and return without waiting for health."""

    @abc.abstractmethod
    def stop(self, handle: ContainerHandle) -> None:
        """Stop and discard a service; stopping an exited service is a no-op."""

    @abc.abstractmethod
    def exec(self, handle: ContainerHandle, command: Sequence[str]) -> ExecResult:
        ...

    @abc.abstractmethod
    def is_running(self, handle: ContainerHandle) -> bool:
        ...

    @abc.abstractmethod
    def run_to_completion(self, spec: ContainerSpec, timeout_s: float) -> int:
        """Run a one-shot service, block until it exits and return its exit code.

        Raises ``TimeoutError`` when it is still running after ``timeout_s``.
        """

    def host_address(self, handle: ContainerHandle, port: int) -> tuple[str, int]:
        """Return the host and port under which ``port`` of ``handle`` is reachable."""
        raise NotImplementedError(f"{type(self).__name__} does not publish ports")

    def close(self) -> None:
        """Release adapter level resources such as networks."""

    def await_healthy(
        self,
        handle: ContainerHandle,
        predicate: HealthCheck,
        timeout_s: float,
    ) -> bool:
        deadline = self.clock() + timeout_s
        while True:
            if not self.is_running(handle):
                LOGGER.warning("%s exited before becoming healthy", handle.spec.describe())
                return False
            if predicate(self, handle):
                return True
            now = self.clock()
            if now >= deadline:
                return False
            self.sleep(min(self.poll_interval_s, max(0.05, deadline - now)))

    def await_stopped(self, handle: ContainerHandle, timeout_s: float) -> bool:
        deadline = self.clock() + timeout_s
        while self.is_running(handle):
            if self.clock() >= deadline:
                return False
            self.sleep(self.poll_interval_s)
        return True

    # Process control of the JVM target, expressed through exec.

    def begin_recording(
        self,
        handle: ContainerHandle,
        name: str,
        filename: str,
        settings: str = "profile",
    ) -> None:
        command = [
            "jcmd",
            TARGET_PID,
            "JFR.start",
            f"settings={settings}",
            "dumponexit=true",
            f"name={name}",
            f"filename={filename}",
        ]
        self._exec_checked(handle, command, f"start recording {name!r}")

    def stop_recording(self, handle: ContainerHandle, name: str) -> None:
        self._exec_checked(handle, ["jcmd", TARGET_PID, "JFR.stop", f"name={name}"], f"stop recording {name!r}")

    def graceful_terminate(self, handle: ContainerHandle) -> None:
        # SIGTERM lets the JVM run its exit hooks, which dump the recording.
        self.exec(handle, ["kill", TARGET_PID])

    def _exec_checked(self, handle: ContainerHandle, command: Sequence[str], action: str) -> ExecResult:
        result = self.exec(handle, command)
        if not result.ok:
            raise RecordingError(
                f"Failed to {action} in {handle.spec.name}: exit code {result.exit_code}: {result.output.strip()}"
            )
        return result


def http_health_check(
    path: str,
    port: int,
    expected_status: int = 200,
    request_timeout_s: float = 2.0,
) -> HealthCheck:
    """Healthy once ``GET path`` on the published ``port`` answers ``expected_status``."""

    def check(environment: EnvironmentAdapter, handle: ContainerHandle) -> bool:
        host, host_port = environment.host_address(handle, port)
        try:
            response = requests.get(f"http://{host}:{host_port}{path}", timeout=request_timeout_s)
        except requests.RequestException:
            return False
        return response.status_code == expected_status

    return check


def exec_health_check(command: Sequence[str]) -> HealthCheck:
    """Healthy once ``command`` exits with status 0 inside the service."""

    def check(environment: EnvironmentAdapter, handle: ContainerHandle) -> bool:
        return environment.exec(handle, command).ok

    return check


__all__ = [
    "ContainerHandle",
    "ContainerSpec",
    "EnvironmentAdapter",
    "ExecResult",
    "HealthCheck",
    "exec_health_check",
    "http_health_check",
]
