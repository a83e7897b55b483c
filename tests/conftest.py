from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Sequence

import pytest

from overhead.agents import Agent
from overhead.config import RunConfiguration
from overhead.containers import PetClinicStack
from overhead.environment import ContainerHandle, ContainerSpec, EnvironmentAdapter, ExecResult
from overhead.naming import NamingConventions
from overhead.resolver import ArtifactResolver, SingleFlightCache

K6_SUMMARY = {
    "metrics": {
        "http_req_duration": {"avg": 12.5, "min": 1.0, "med": 10.0, "max": 80.0, "p(90)": 25.0, "p(95)": 30.0},
        "http_reqs": {"count": 500, "rate": 50.0},
        "http_req_failed": {"passes": 0, "fails": 500, "value": 0},
        "iteration_duration": {"avg": 60.0, "p(95)": 120.0},
        "iterations": {"count": 100, "rate": 10.0},
    }
}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEnvironment(EnvironmentAdapter):
    """In-memory adapter that records every lifecycle call in ``events``.

    Health is decided per container spec through ``unhealthy``; one-shot k6
    containers take ``load_duration_s`` of fake time and write a summary when
    asked to export one.
    """

    def __init__(self, naming: NamingConventions, clock: FakeClock | None = None) -> None:
        clock = clock or FakeClock()
        super().__init__(clock=clock, sleep=clock.advance)
        self.fake_clock = clock
        self.naming = naming
        self.events: list[tuple] = []
        self.unhealthy: Callable[[ContainerSpec], bool] = lambda spec: False
        self.startup_s = 2.5
        self.load_duration_s = 10.0
        self.load_exit_code = 0
        self.write_summaries = True
        self.ignore_sigterm = False
        self.exec_results: dict[str, ExecResult] = {}

    def start(self, spec: ContainerSpec) -> ContainerHandle:
        self.events.append(("start", spec.image, spec.name))
        return ContainerHandle(spec=spec, ref={"running": True})

    def stop(self, handle: ContainerHandle) -> None:
        self.events.append(("stop", handle.spec.image, handle.spec.name))
        handle.ref["running"] = False

    def exec(self, handle: ContainerHandle, command: Sequence[str]) -> ExecResult:
        command = tuple(command)
        self.events.append(("exec", handle.spec.image, command))
        if command == ("kill", "1") and not self.ignore_sigterm:
            handle.ref["running"] = False
        for marker, result in self.exec_results.items():
            if marker in command:
                return result
        return ExecResult(exit_code=0, output="")

    def is_running(self, handle: ContainerHandle) -> bool:
        return handle.ref["running"]

    def await_healthy(self, handle, predicate, timeout_s):
        self.events.append(("await_healthy", handle.spec.image, handle.spec.name))
        if self.unhealthy(handle.spec):
            self.fake_clock.advance(timeout_s)
            return False
        self.fake_clock.advance(self.startup_s)
        return True

    def run_to_completion(self, spec: ContainerSpec, timeout_s: float) -> int:
        command = tuple(spec.command)
        self.events.append(("run", spec.image, command))
        self.fake_clock.advance(self.load_duration_s)
        if self.write_summaries and "--summary-export" in command:
            container_path = command[command.index("--summary-export") + 1]
            local_path = self.naming.to_local(container_path)
            local_path.parent.mkdir(parents=True, exist_ok=True)
            local_path.write_text(json.dumps(K6_SUMMARY), encoding="utf-8")
        return self.load_exit_code

    def names(self, kind: str, image: str) -> list[str]:
        return [event[2] for event in self.events if event[0] == kind and event[1] == image]

    def commands(self, image: str | None = None) -> list[tuple]:
        return [
            event[2]
            for event in self.events
            if event[0] in ("exec", "run") and (image is None or event[1] == image)
        ]


@pytest.fixture
def naming(tmp_path: Path) -> NamingConventions:
    return NamingConventions(local_root=tmp_path / "results")


@pytest.fixture
def environment(naming: NamingConventions) -> FakeEnvironment:
    return FakeEnvironment(naming)


@pytest.fixture
def stack(naming: NamingConventions) -> PetClinicStack:
    return PetClinicStack(naming)


@pytest.fixture
def resolver(tmp_path: Path) -> ArtifactResolver:
    return ArtifactResolver(tmp_path / "work", cache=SingleFlightCache())


@pytest.fixture
def agent_jar(tmp_path: Path) -> Path:
    jar = tmp_path / "build" / "custom-javaagent.jar"
    jar.parent.mkdir(parents=True)
    jar.write_bytes(b"PK\x03\x04 fake agent")
    return jar


@pytest.fixture
def custom_agent(agent_jar: Path) -> Agent:
    return Agent(name="custom", description="local build", locator=agent_jar.as_uri())


@pytest.fixture
def make_config() -> Callable[..., RunConfiguration]:
    def factory(agents, **overrides) -> RunConfiguration:
        values = dict(
            name="test-config",
            description="test configuration",
            agents=agents,
            number_of_passes=1,
            concurrent_connections=2,
            iteration_count=50,
        )
        values.update(overrides)
        return RunConfiguration(**values)

    return factory
