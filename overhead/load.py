from __future__ import annotations

import logging
from dataclasses import dataclass

from .agents import Agent
from .config import RunConfiguration
from .containers import PetClinicStack
from .environment import EnvironmentAdapter
from .errors import LoadToolError

LOGGER = logging.getLogger("overhead.load")

LOAD_TIMEOUT_S = 15 * 60.0
WARMUP_BURST_TIMEOUT_S = 5 * 60.0


@dataclass
class LoadStatistics:
    started_at: float
    finished_at: float

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def duration_ms(self) -> int:
        return int(round(self.duration_s * 1000))


@dataclass
class WarmupStatistics:
    bursts: int
    started_at: float
    finished_at: float

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)


class K6LoadTool:
    """Drives k6 as a one-shot container against the running target."""

    def __init__(
        self,
        environment: EnvironmentAdapter,
        stack: PetClinicStack,
        timeout_s: float = LOAD_TIMEOUT_S,
        burst_timeout_s: float = WARMUP_BURST_TIMEOUT_S,
    ) -> None:
        self._environment = environment
        self._stack = stack
        self._timeout_s = timeout_s
        self._burst_timeout_s = burst_timeout_s

    def run(self, config: RunConfiguration, agent: Agent, pass_index: int) -> LoadStatistics:
        """Run the measured load once and block until k6 exits."""
        spec = self._stack.load(config, agent, pass_index)
        LOGGER.info(
            "Running k6 (connections=%d, iterations=%d, rate=%s)",
            config.concurrent_connections,
            config.iteration_count,
            config.max_request_rate or "uncapped",
        )
        started_at = self._environment.clock()
        self._run_once(spec, self._timeout_s)
        finished_at = self._environment.clock()
        return LoadStatistics(started_at=started_at, finished_at=finished_at)

    def warmup(self, agent: Agent, pass_index: int, duration_s: float) -> WarmupStatistics:
        """Repeat short k6 bursts until ``duration_s`` has elapsed since warmup start."""
        started_at = self._environment.clock()
        deadline = started_at + duration_s
        bursts = 0
        while self._environment.clock() < deadline:
            self._run_once(self._stack.warmup_load(agent, pass_index), self._burst_timeout_s)
            bursts += 1
        finished_at = self._environment.clock()
        LOGGER.info("Warmup ran %d burst(s) in %.1fs", bursts, finished_at - started_at)
        return WarmupStatistics(bursts=bursts, started_at=started_at, finished_at=finished_at)

    def _run_once(self, spec, timeout_s: float) -> None:
        try:
            exit_code = self._environment.run_to_completion(spec, timeout_s)
        except TimeoutError as exc:
            raise LoadToolError(f"k6 did not finish within {timeout_s:.0f}s") from exc
        if exit_code != 0:
            raise LoadToolError(f"k6 exited with status {exit_code}")


__all__ = ["K6LoadTool", "LoadStatistics", "WarmupStatistics"]
