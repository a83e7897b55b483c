from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import pandas as pd
import yaml

from .charts import render_overhead_charts
from .collector import RECORD_COLUMNS, RunRecord
from .config import RunConfiguration
from .errors import PersistenceError
from .naming import slug

LOGGER = logging.getLogger("overhead.persister")


@dataclass
class AggregateReport:
    """Every record of a configuration execution plus the configuration itself."""

    config: RunConfiguration
    records: list[RunRecord]

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "records": [record.to_dict() for record in self.records],
        }


def records_frame(records: Sequence[RunRecord]) -> pd.DataFrame:
    if not records:
        return pd.DataFrame(columns=RECORD_COLUMNS)
    return pd.DataFrame([record.to_row() for record in records], columns=RECORD_COLUMNS)


def aggregate_frame(frame: pd.DataFrame, agent_order: Sequence[str]) -> pd.DataFrame:
    """Mean of every metric per agent, in configuration order."""
    if frame.empty:
        return pd.DataFrame(columns=["agent", "passes", *RECORD_COLUMNS[2:]])
    numeric = frame.drop(columns=["pass_index"]).copy()
    metric_columns = [column for column in numeric.columns if column != "agent"]
    numeric[metric_columns] = numeric[metric_columns].apply(pd.to_numeric, errors="coerce")
    grouped = numeric.groupby("agent", sort=False)
    summary = grouped[metric_columns].mean()
    summary.insert(0, "passes", grouped.size())
    order = [agent for agent in agent_order if agent in summary.index]
    order += [agent for agent in summary.index if agent not in order]
    return summary.loc[order].reset_index()


def format_summary(records: Sequence[RunRecord], config: RunConfiguration) -> str:
    frame = records_frame(records)
    lines = [
        "----------------------------------------------------------",
        f" Run configuration: {config.name}",
        f" {config.description}".rstrip(),
        f" passes={config.number_of_passes} connections={config.concurrent_connections} "
        f"iterations={config.iteration_count} max_rate={config.max_request_rate or 'uncapped'} "
        f"warmup={config.warmup_seconds}s",
        "----------------------------------------------------------",
    ]
    if frame.empty:
        lines.append(" <no records>")
        return "\n".join(lines) + "\n"
    display = frame[
        [
            "agent",
            "pass_index",
            "startup_duration_ms",
            "run_duration_ms",
            "request_avg_ms",
            "request_p95_ms",
            "request_rate",
        ]
    ]
    lines.append(display.to_string(index=False, float_format=lambda value: f"{value:.2f}"))
    return "\n".join(lines) + "\n"


class MainResultsPersister:
    """Write per-pass and aggregate outputs under ``<results>/<configuration>/``.

    One persister serves one execution of a configuration. Its first
    ``write_pass`` replaces any ``results.csv`` left by an earlier execution,
    and ``write_all`` rewrites it from the complete record list, so the file
    never lists runs that did not produce a record this time.
    """

    def __init__(self, config: RunConfiguration, results_root: str | Path) -> None:
        self._config = config
        self._output_dir = Path(results_root) / slug(config.name)
        self._replace_existing = True

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    @property
    def results_csv(self) -> Path:
        return self._output_dir / "results.csv"

    def write_pass(self, records: Sequence[RunRecord]) -> None:
        self._ensure_created()
        frame = records_frame(records)
        csv_path = self.results_csv
        if self._replace_existing:
            merged = self._sorted(frame)
        else:
            merged = self._upsert(csv_path, frame)
        try:
            merged.to_csv(csv_path, index=False)
            summary = format_summary(records, self._config)
            (self._output_dir / "summary.txt").write_text(summary, encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Error writing pass results to {self._output_dir}: {exc}") from exc
        self._replace_existing = False
        LOGGER.info("Pass results for %s:\n%s", self._config.name, summary)
        LOGGER.info("Wrote %d record(s) to %s", len(frame), csv_path)

    def write_all(self, records: Sequence[RunRecord]) -> None:
        self._ensure_created()
        report = AggregateReport(config=self._config, records=list(records))
        frame = records_frame(records)
        try:
            self._sorted(frame).to_csv(self.results_csv, index=False)
            with open(self._output_dir / "results.yaml", "w", encoding="utf-8") as handle:
                yaml.safe_dump(report.to_dict(), handle, sort_keys=False)
            with open(self._output_dir / "config.json", "w", encoding="utf-8") as handle:
                json.dump(self._config.to_dict(), handle, indent=2)
            aggregate_frame(frame, self._config.agent_names()).to_csv(
                self._output_dir / "aggregated.csv", index=False
            )
            charts = render_overhead_charts(self._config, frame, self._output_dir)
        except OSError as exc:
            raise PersistenceError(f"Error writing aggregate results to {self._output_dir}: {exc}") from exc
        except (ValueError, TypeError, RuntimeError) as exc:
            raise PersistenceError(f"Error rendering charts for {self._config.name}: {exc}") from exc
        self._replace_existing = False
        LOGGER.info(
            "Wrote aggregate of %d record(s) to %s%s",
            len(records),
            self._output_dir,
            f" (charts: {', '.join(str(path.name) for path in charts)})" if charts else "",
        )

    def _upsert(self, csv_path: Path, frame: pd.DataFrame) -> pd.DataFrame:
        if not csv_path.exists() or csv_path.stat().st_size == 0:
            return self._sorted(frame)
        try:
            # Only empty cells are missing values; agent names such as "none" stay strings.
            existing = pd.read_csv(csv_path, keep_default_na=False, na_values=[""])
            if existing.empty:
                return self._sorted(frame)
            replaced = set(zip(frame["agent"], frame["pass_index"]))
            keep = [
                (str(agent), int(pass_index)) not in replaced
                for agent, pass_index in zip(existing["agent"], existing["pass_index"])
            ]
        except OSError as exc:
            raise PersistenceError(f"Error reading {csv_path}: {exc}") from exc
        except (ValueError, KeyError) as exc:
            # ParserError and UnicodeDecodeError are ValueErrors; KeyError means missing columns.
            raise PersistenceError(f"Existing results file {csv_path} is corrupt: {exc!r}") from exc
        return self._sorted(pd.concat([existing[keep], frame], ignore_index=True))

    def _sorted(self, frame: pd.DataFrame) -> pd.DataFrame:
        if frame.empty:
            return frame
        rank = {name: position for position, name in enumerate(self._config.agent_names())}
        ordered = frame.assign(_rank=frame["agent"].map(rank))
        ordered = ordered.sort_values(["pass_index", "_rank"], kind="stable", na_position="last")
        return ordered.drop(columns="_rank").reset_index(drop=True)

    def _ensure_created(self) -> None:
        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Error creating output directory {self._output_dir}") from exc


__all__ = [
    "AggregateReport",
    "MainResultsPersister",
    "aggregate_frame",
    "format_summary",
    "records_frame",
]
