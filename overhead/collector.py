from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from .config import RunConfiguration
from .errors import CollectionError
from .naming import NamingConvention

LOGGER = logging.getLogger("overhead.collector")

RECORD_COLUMNS = [
    "agent",
    "pass_index",
    "startup_duration_ms",
    "run_duration_ms",
    "request_avg_ms",
    "request_p95_ms",
    "request_rate",
    "request_count",
    "request_failed_rate",
    "iteration_avg_ms",
    "iteration_p95_ms",
    "iteration_count",
]


@dataclass(frozen=True)
class CompletedRun:
    """What the orchestrator knows about a run that reached DONE."""

    agent: str
    pass_index: int
    run_duration_ms: int


@dataclass(frozen=True)
class RunRecord:
    """Measurements of one (agent, pass) run."""

    agent: str
    pass_index: int
    startup_duration_ms: int
    run_duration_ms: int
    load_summary: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def key(self) -> tuple[str, int]:
        return self.agent, self.pass_index

    def metrics(self) -> dict[str, float | None]:
        return summarise_k6(self.load_summary)

    def to_row(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            "agent": self.agent,
            "pass_index": self.pass_index,
            "startup_duration_ms": self.startup_duration_ms,
            "run_duration_ms": self.run_duration_ms,
        }
        row.update(self.metrics())
        return row

    def to_dict(self) -> dict[str, Any]:
        data = self.to_row()
        data["load_summary"] = dict(self.load_summary)
        return data


def summarise_k6(summary: Mapping[str, Any]) -> dict[str, float | None]:
    """Pick the comparison metrics out of a k6 ``--summary-export`` document."""
    metrics = summary.get("metrics", {}) if isinstance(summary, Mapping) else {}

    def value(metric: str, key: str) -> float | None:
        data = metrics.get(metric)
        if not isinstance(data, Mapping):
            return None
        # Newer k6 versions nest the numbers under "values".
        if isinstance(data.get("values"), Mapping):
            data = data["values"]
        raw = data.get(key)
        return float(raw) if isinstance(raw, (int, float)) else None

    failed_rate = value("http_req_failed", "value")
    if failed_rate is None:
        failed_rate = value("http_req_failed", "rate")

    return {
        "request_avg_ms": value("http_req_duration", "avg"),
        "request_p95_ms": value("http_req_duration", "p(95)"),
        "request_rate": value("http_reqs", "rate"),
        "request_count": value("http_reqs", "count"),
        "request_failed_rate": failed_rate,
        "iteration_avg_ms": value("iteration_duration", "avg"),
        "iteration_p95_ms": value("iteration_duration", "p(95)"),
        "iteration_count": value("iterations", "count"),
    }


class ResultsCollector:
    """Assemble run records from the artifacts each completed run left behind."""

    def __init__(self, naming: NamingConvention) -> None:
        self._naming = naming

    def collect(self, config: RunConfiguration, completed: Iterable[CompletedRun]) -> list[RunRecord]:
        records: list[RunRecord] = []
        problems: list[str] = []
        for run in completed:
            try:
                records.append(self.collect_one(config, run))
            except CollectionError as exc:
                LOGGER.error("%s", exc)
                problems.append(str(exc))
        if problems:
            raise CollectionError(
                f"{len(problems)} run(s) of {config.name!r} are missing results: " + "; ".join(problems)
            )
        return records

    def collect_one(self, config: RunConfiguration, run: CompletedRun) -> RunRecord:
        startup_path = self._naming.startup_duration_file(config.name, run.agent, run.pass_index)
        summary_path = self._naming.k6_results(config.name, run.agent, run.pass_index)
        return RunRecord(
            agent=run.agent,
            pass_index=run.pass_index,
            startup_duration_ms=_read_startup(startup_path, run),
            run_duration_ms=run.run_duration_ms,
            load_summary=_read_summary(summary_path, run),
        )


def write_startup_duration(path: Path, duration_ms: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(duration_ms), encoding="utf-8")


def _read_startup(path: Path, run: CompletedRun) -> int:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as exc:
        raise CollectionError(
            f"startup time for {run.agent} pass {run.pass_index} not readable at {path}: {exc}"
        ) from exc
    try:
        value = int(text)
    except ValueError as exc:
        raise CollectionError(
            f"startup time for {run.agent} pass {run.pass_index} is not an integer: {text!r}"
        ) from exc
    if value < 0:
        raise CollectionError(f"startup time for {run.agent} pass {run.pass_index} is negative")
    return value


def _read_summary(path: Path, run: CompletedRun) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except OSError as exc:
        raise CollectionError(
            f"k6 summary for {run.agent} pass {run.pass_index} not readable at {path}: {exc}"
        ) from exc
    except ValueError as exc:
        # JSONDecodeError and UnicodeDecodeError
        raise CollectionError(
            f"k6 summary for {run.agent} pass {run.pass_index} is malformed: {exc}"
        ) from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("metrics"), dict):
        raise CollectionError(
            f"k6 summary for {run.agent} pass {run.pass_index} has no 'metrics' section"
        )
    return payload


__all__ = [
    "CompletedRun",
    "RECORD_COLUMNS",
    "ResultsCollector",
    "RunRecord",
    "summarise_k6",
    "write_startup_duration",
]
