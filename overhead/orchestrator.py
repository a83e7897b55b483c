"""Sequential execution of the (agent, pass) run matrix.

Every run walks the same state machine::

    PROVISIONING -> TARGET_STARTING -> [WARMUP] -> RECORDING_STARTED
        -> LOAD_RUNNING -> GRACEFUL_SHUTDOWN -> TEARDOWN -> DONE

and any stage may end in FAILED. A failed run is reported and skipped; it is
never retried and never produces a record, and the remaining runs continue.
Runs never overlap because they share the network, the collector and the
host, and contention would bias whichever run came later.
"""

from __future__ import annotations

import contextlib
import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Type

from .agents import Agent
from .collector import CompletedRun, ResultsCollector, RunRecord, write_startup_duration
from .config import RunConfiguration, RunOrder
from .containers import PetClinicStack, ServiceDefinition
from .environment import ContainerHandle, EnvironmentAdapter
from .errors import (
    LoadToolError,
    OverheadError,
    ProvisioningError,
    RecordingError,
    ShutdownError,
    StartupError,
)
from .load import K6LoadTool
from .naming import NamingConventions, run_name
from .persister import AggregateReport, MainResultsPersister
from .resolver import ArtifactResolver

LOGGER = logging.getLogger("overhead.orchestrator")

SHUTDOWN_TIMEOUT_S = 2 * 60.0


class RunState(str, enum.Enum):
    PROVISIONING = "provisioning"
    TARGET_STARTING = "target-starting"
    WARMUP = "warmup"
    RECORDING_STARTED = "recording-started"
    LOAD_RUNNING = "load-running"
    GRACEFUL_SHUTDOWN = "graceful-shutdown"
    TEARDOWN = "teardown"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RunSlot:
    """Position of one run in the matrix; ``position`` is 1-based."""

    agent: Agent
    agent_index: int
    pass_index: int
    position: int
    total: int


def iter_runs(config: RunConfiguration) -> Iterator[RunSlot]:
    total = config.total_runs
    if config.order is RunOrder.PASSES_FIRST:
        pairs = (
            (agent_index, pass_index)
            for pass_index in range(config.number_of_passes)
            for agent_index in range(len(config.agents))
        )
    else:
        pairs = (
            (agent_index, pass_index)
            for agent_index in range(len(config.agents))
            for pass_index in range(config.number_of_passes)
        )
    for position, (agent_index, pass_index) in enumerate(pairs, start=1):
        yield RunSlot(
            agent=config.agents[agent_index],
            agent_index=agent_index,
            pass_index=pass_index,
            position=position,
            total=total,
        )


def format_progress(slot: RunSlot, config: RunConfiguration) -> str:
    return (
        f"Pass {slot.pass_index + 1}/{config.number_of_passes} "
        f"Agent {slot.agent_index + 1}/{len(config.agents)} "
        f"- Total {slot.position}/{slot.total}"
    )


@dataclass
class RunOutcome:
    config_name: str
    agent: str
    pass_index: int
    state: RunState = RunState.PROVISIONING
    transitions: list[tuple[RunState, float]] = field(default_factory=list)
    startup_duration_ms: int | None = None
    run_duration_ms: int | None = None
    failed_stage: RunState | None = None
    error: OverheadError | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE

    def advance(self, state: RunState, at: float) -> None:
        self.state = state
        self.transitions.append((state, at))

    def fail(self, error: OverheadError, at: float) -> None:
        self.failed_stage = self.state
        self.error = error
        self.advance(RunState.FAILED, at)

    def entered_at(self, state: RunState) -> float | None:
        for recorded, at in self.transitions:
            if recorded is state:
                return at
        return None

    def describe(self) -> str:
        return f"{self.config_name}/{self.agent}/pass{self.pass_index}"


@dataclass
class ExecutionReport:
    config: RunConfiguration
    records: list[RunRecord]
    outcomes: list[RunOutcome]

    @property
    def failures(self) -> list[RunOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    @property
    def aggregate(self) -> AggregateReport:
        return AggregateReport(config=self.config, records=list(self.records))


class RunOrchestrator:
    """Run every agent of a configuration through the per-run state machine."""

    def __init__(
        self,
        environment: EnvironmentAdapter,
        stack: PetClinicStack,
        resolver: ArtifactResolver,
        naming: NamingConventions,
        load_tool: K6LoadTool | None = None,
        shutdown_timeout_s: float = SHUTDOWN_TIMEOUT_S,
        progress_file: str | Path | None = None,
    ) -> None:
        self._environment = environment
        self._stack = stack
        self._resolver = resolver
        self._naming = naming
        self._load_tool = load_tool or K6LoadTool(environment, stack)
        self._shutdown_timeout_s = shutdown_timeout_s
        self._progress_file = Path(progress_file) if progress_file else None

    def execute(
        self,
        config: RunConfiguration,
        collector: ResultsCollector,
        persister: MainResultsPersister,
    ) -> ExecutionReport:
        """Run the whole matrix, writing each pass as soon as its last run ends.

        ``CollectionError`` and ``PersistenceError`` propagate: a broken
        aggregate invalidates the comparison for the whole configuration.
        """
        LOGGER.info(
            "Executing configuration %s: %d agent(s) x %d pass(es), order=%s",
            config.name,
            len(config.agents),
            config.number_of_passes,
            config.order.value,
        )
        outcomes: list[RunOutcome] = []
        records: list[RunRecord] = []
        remaining = {pass_index: len(config.agents) for pass_index in range(config.number_of_passes)}
        completed: dict[int, list[CompletedRun]] = defaultdict(list)

        shared = self._start_shared_services()
        try:
            for slot in iter_runs(config):
                self._report_progress(format_progress(slot, config))
                outcome = self.run_once(config, slot.agent, slot.pass_index)
                outcomes.append(outcome)
                if outcome.succeeded:
                    completed[slot.pass_index].append(
                        CompletedRun(
                            agent=slot.agent.name,
                            pass_index=slot.pass_index,
                            run_duration_ms=outcome.run_duration_ms,
                        )
                    )
                remaining[slot.pass_index] -= 1
                if remaining[slot.pass_index] == 0:
                    pass_runs = completed.pop(slot.pass_index, [])
                    records.extend(
                        self._finish_pass(config, slot.pass_index, pass_runs, collector, persister)
                    )
        finally:
            self._stop_shared_services(shared)

        persister.write_all(records)
        report = ExecutionReport(config=config, records=records, outcomes=outcomes)
        for failure in report.failures:
            LOGGER.error(
                "FAILED run %s at stage %s: %s",
                failure.describe(),
                failure.failed_stage.value if failure.failed_stage else "?",
                failure.error,
            )
        LOGGER.info(
            "Configuration %s finished: %d record(s), %d failed run(s)",
            config.name,
            len(records),
            len(report.failures),
        )
        return report

    def run_once(self, config: RunConfiguration, agent: Agent, pass_index: int) -> RunOutcome:
        """Execute one (agent, pass) run; failures are captured on the outcome."""
        environment = self._environment
        clock = environment.clock
        outcome = RunOutcome(config_name=config.name, agent=agent.name, pass_index=pass_index)
        database: ContainerHandle | None = None
        target: ContainerHandle | None = None

        try:
            with self._stage(outcome, RunState.PROVISIONING, ProvisioningError):
                self._clear_artifacts(config, agent, pass_index)
                database_definition = self._stack.database(agent, pass_index)
                if database_definition is not None:
                    database = self._start_service(database_definition, ProvisioningError)

            with self._stage(outcome, RunState.TARGET_STARTING, StartupError):
                artifact = self._resolver.resolve(agent.locator)
                definition = self._stack.target(agent, pass_index, artifact)
                started_at = clock()
                target = environment.start(definition.spec)
                if not environment.await_healthy(target, definition.health_check, definition.startup_timeout_s):
                    raise StartupError(
                        f"{definition.spec.describe()} not healthy within {definition.startup_timeout_s:.0f}s"
                    )
                outcome.startup_duration_ms = int(round((clock() - started_at) * 1000))
                write_startup_duration(
                    self._naming.local.startup_duration_file(config.name, agent.name, pass_index),
                    outcome.startup_duration_ms,
                )
                LOGGER.info("%s started in %d ms", agent.name, outcome.startup_duration_ms)

            if config.warmup_seconds > 0:
                with self._stage(outcome, RunState.WARMUP, LoadToolError):
                    self._warmup(config, agent, pass_index, target)

            with self._stage(outcome, RunState.RECORDING_STARTED, RecordingError):
                environment.begin_recording(
                    target,
                    name=run_name(agent.name, pass_index),
                    filename=str(self._naming.container.jfr_file(config.name, agent.name, pass_index)),
                    settings=self._stack.recording_settings,
                )

            with self._stage(outcome, RunState.LOAD_RUNNING, LoadToolError):
                statistics = self._load_tool.run(config, agent, pass_index)
                outcome.run_duration_ms = statistics.duration_ms

            with self._stage(outcome, RunState.GRACEFUL_SHUTDOWN, ShutdownError):
                # A forced kill would leave the recording empty, so wait for the JVM to exit.
                environment.graceful_terminate(target)
                if not environment.await_stopped(target, self._shutdown_timeout_s):
                    raise ShutdownError(
                        f"{target.spec.describe()} still running {self._shutdown_timeout_s:.0f}s after SIGTERM"
                    )
                environment.stop(target)
                target = None

            with self._stage(outcome, RunState.TEARDOWN, ProvisioningError):
                if database is not None:
                    environment.stop(database)
                    database = None

            outcome.advance(RunState.DONE, clock())
        except OverheadError as exc:
            LOGGER.error(
                "Run failed (config=%s, agent=%s, pass=%d, stage=%s): %s",
                config.name,
                agent.name,
                pass_index,
                outcome.state.value,
                exc,
                exc_info=exc,
            )
            outcome.fail(exc, clock())
        finally:
            self._cleanup(target, database)
        return outcome

    def _warmup(
        self,
        config: RunConfiguration,
        agent: Agent,
        pass_index: int,
        target: ContainerHandle,
    ) -> None:
        LOGGER.info("Performing startup warming phase for %d seconds...", config.warmup_seconds)
        name = f"warmup-{run_name(agent.name, pass_index)}"
        filename = str(self._naming.container.warmup_jfr_file(config.name, agent.name, pass_index))
        self._environment.begin_recording(
            target, name=name, filename=filename, settings=self._stack.recording_settings
        )
        try:
            self._load_tool.warmup(agent, pass_index, config.warmup_seconds)
        except Exception:
            try:
                self._environment.stop_recording(target, name)
            except Exception:  # noqa: BLE001
                LOGGER.warning("Failed to stop the warmup recording %s", name, exc_info=True)
            raise
        self._environment.stop_recording(target, name)
        LOGGER.info("Warmup complete.")

    def _clear_artifacts(self, config: RunConfiguration, agent: Agent, pass_index: int) -> None:
        """Remove what an earlier execution left for this run so it cannot be collected again."""
        local = self._naming.local
        for path in (
            local.startup_duration_file(config.name, agent.name, pass_index),
            local.k6_results(config.name, agent.name, pass_index),
            local.jfr_file(config.name, agent.name, pass_index),
            local.warmup_jfr_file(config.name, agent.name, pass_index),
        ):
            path.unlink(missing_ok=True)

    @contextlib.contextmanager
    def _stage(
        self,
        outcome: RunOutcome,
        state: RunState,
        error_type: Type[OverheadError],
    ) -> Iterator[None]:
        outcome.advance(state, self._environment.clock())
        LOGGER.debug("%s -> %s", outcome.describe(), state.value)
        try:
            yield
        except OverheadError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise error_type(f"{state.value} failed for {outcome.describe()}: {exc}") from exc

    def _start_service(
        self,
        definition: ServiceDefinition,
        error_type: Type[OverheadError],
    ) -> ContainerHandle:
        handle = self._environment.start(definition.spec)
        if not self._environment.await_healthy(handle, definition.health_check, definition.startup_timeout_s):
            with contextlib.suppress(Exception):
                self._environment.stop(handle)
            raise error_type(
                f"{definition.spec.describe()} not ready within {definition.startup_timeout_s:.0f}s"
            )
        return handle

    def _finish_pass(
        self,
        config: RunConfiguration,
        pass_index: int,
        completed: list[CompletedRun],
        collector: ResultsCollector,
        persister: MainResultsPersister,
    ) -> list[RunRecord]:
        pass_records = collector.collect(config, completed)
        if pass_records:
            persister.write_pass(pass_records)
        else:
            LOGGER.warning("Pass %d of %s produced no records", pass_index + 1, config.name)
        return pass_records

    def _start_shared_services(self) -> list[ContainerHandle]:
        definition = self._stack.collector()
        if definition is None:
            LOGGER.info("Using external collector at %s", self._stack.collector_endpoint)
            return []
        try:
            return [self._start_service(definition, ProvisioningError)]
        except ProvisioningError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ProvisioningError(f"Failed to start the collector: {exc}") from exc

    def _stop_shared_services(self, handles: list[ContainerHandle]) -> None:
        for handle in handles:
            try:
                self._environment.stop(handle)
            except Exception:  # noqa: BLE001
                LOGGER.warning("Failed to stop %s", handle.spec.describe(), exc_info=True)

    def _cleanup(self, target: ContainerHandle | None, database: ContainerHandle | None) -> None:
        for handle in (target, database):
            if handle is None:
                continue
            try:
                self._environment.stop(handle)
            except Exception:  # noqa: BLE001
                LOGGER.warning("Failed to clean up %s", handle.spec.describe(), exc_info=True)

    def _report_progress(self, line: str) -> None:
        LOGGER.info(line)
        if self._progress_file is None:
            return
        try:
            self._progress_file.parent.mkdir(parents=True, exist_ok=True)
            self._progress_file.write_text(line + "\n", encoding="utf-8")
        except OSError:
            LOGGER.warning("Unable to write progress to %s", self._progress_file, exc_info=True)


__all__ = [
    "AggregateReport",
    "ExecutionReport",
    "RunOrchestrator",
    "RunOutcome",
    "RunSlot",
    "RunState",
    "format_progress",
    "iter_runs",
]
