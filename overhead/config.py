from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml

from . import agents as catalog
from .agents import Agent, agents_from_definitions
from .errors import ConfigurationError
from .naming import slug

DEFAULT_NUMBER_OF_PASSES = 1
DEFAULT_MAX_REQUEST_RATE = 0  # uncapped
DEFAULT_CONCURRENT_CONNECTIONS = 5
DEFAULT_ITERATION_COUNT = 500


class RunOrder(str, enum.Enum):
    """Order in which the (agent, pass) matrix is walked."""

    AGENTS_FIRST = "agents-first"
    PASSES_FIRST = "passes-first"


@dataclass(frozen=True)
class RunConfiguration:
    """Named experiment: which agents to compare and how to load the target.

    ``number_of_passes`` is the number of times every agent is run. A pass
    executes the load tool once per agent with the configured settings.
    ``iteration_count`` is the total number of k6 iterations per run.
    """

    name: str
    description: str
    agents: Sequence[Agent]
    number_of_passes: int = DEFAULT_NUMBER_OF_PASSES
    max_request_rate: int = DEFAULT_MAX_REQUEST_RATE
    concurrent_connections: int = DEFAULT_CONCURRENT_CONNECTIONS
    iteration_count: int = DEFAULT_ITERATION_COUNT
    warmup_seconds: int = 0
    order: RunOrder = RunOrder.AGENTS_FIRST

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigurationError(f"RunConfiguration name must be a non-empty string, got {self.name!r}")
        if isinstance(self.agents, (str, bytes)):
            raise ConfigurationError(f"RunConfiguration {self.name!r}: agents must be a list")
        object.__setattr__(self, "agents", tuple(self.agents))
        for agent in self.agents:
            if not isinstance(agent, Agent):
                raise ConfigurationError(f"RunConfiguration {self.name!r}: {agent!r} is not an Agent")
        try:
            object.__setattr__(self, "order", RunOrder(self.order))
        except ValueError as exc:
            known = ", ".join(order.value for order in RunOrder)
            raise ConfigurationError(
                f"RunConfiguration {self.name!r}: unknown order {self.order!r} (known: {known})"
            ) from exc

        if not self.agents:
            raise ConfigurationError(f"RunConfiguration {self.name!r} has no agents")
        names = [agent.name for agent in self.agents]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(
                f"RunConfiguration {self.name!r} lists agents more than once: {', '.join(duplicates)}"
            )
        # Artifact file names are derived from the slug, so it must be unique as well.
        clashes = _slug_clashes(names)
        if clashes:
            raise ConfigurationError(
                f"RunConfiguration {self.name!r} has agents whose file names collide: {clashes}"
            )
        _require_at_least(self.name, "number_of_passes", self.number_of_passes, 1)
        _require_at_least(self.name, "max_request_rate", self.max_request_rate, 0)
        _require_at_least(self.name, "concurrent_connections", self.concurrent_connections, 1)
        _require_at_least(self.name, "iteration_count", self.iteration_count, 1)
        _require_at_least(self.name, "warmup_seconds", self.warmup_seconds, 0)

    @property
    def total_runs(self) -> int:
        return self.number_of_passes * len(self.agents)

    def agent_names(self) -> list[str]:
        return [agent.name for agent in self.agents]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "agents": [agent.to_dict() for agent in self.agents],
            "number_of_passes": self.number_of_passes,
            "max_request_rate": self.max_request_rate,
            "concurrent_connections": self.concurrent_connections,
            "iteration_count": self.iteration_count,
            "warmup_seconds": self.warmup_seconds,
            "order": self.order.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunConfiguration":
        if not isinstance(data, Mapping):
            raise ConfigurationError(
                f"Run configuration must be a mapping, got {type(data).__name__}: {data!r}"
            )
        try:
            name = data["name"]
            agent_definitions = data["agents"]
        except KeyError as exc:
            raise ConfigurationError(f"Run configuration is missing {exc.args[0]!r}") from exc
        # Numbers are passed through as given so that validation rejects
        # strings and floats instead of coercing them.
        return cls(
            name=name,
            description=data.get("description") or "",
            agents=agents_from_definitions(agent_definitions),
            number_of_passes=data.get("number_of_passes", DEFAULT_NUMBER_OF_PASSES),
            max_request_rate=data.get("max_request_rate", DEFAULT_MAX_REQUEST_RATE),
            concurrent_connections=data.get("concurrent_connections", DEFAULT_CONCURRENT_CONNECTIONS),
            iteration_count=data.get("iteration_count", DEFAULT_ITERATION_COUNT),
            warmup_seconds=data.get("warmup_seconds", 0),
            order=data.get("order", RunOrder.AGENTS_FIRST.value),
        )


def default_configurations() -> dict[str, RunConfiguration]:
    """Return the built-in configurations keyed by name."""

    configs = [
        RunConfiguration(
            name="release",
            description="compares the latest stable release to no agent",
            agents=[catalog.NONE, catalog.SPLUNK_OTEL, catalog.SPLUNK_PROFILER],
        ),
        RunConfiguration(
            name="release-passes",
            description="latest release against no agent, repeated with a warmup",
            agents=[catalog.NONE, catalog.SPLUNK_OTEL],
            number_of_passes=3,
            warmup_seconds=30,
            order=RunOrder.PASSES_FIRST,
        ),
        RunConfiguration(
            name="splunk-versions",
            description="compares recent Splunk distribution versions",
            agents=[catalog.NONE, catalog.SPLUNK_1_13, catalog.SPLUNK_1_14, catalog.SPLUNK_OTEL],
        ),
        RunConfiguration(
            name="upstream",
            description="compares upstream OpenTelemetry instrumentation to no agent",
            agents=[catalog.NONE, catalog.OTEL],
        ),
    ]
    return {config.name: config for config in configs}


def load_configurations(path: str | Path) -> list[RunConfiguration]:
    """Load one or more configurations from a JSON or YAML file.

    The document is either a single configuration mapping, a list of them, or
    a mapping with a ``configurations`` list.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Unable to read configuration file {path}: {exc}") from exc

    try:
        if path.suffix == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Malformed configuration file {path}: {exc}") from exc

    if isinstance(document, Mapping) and "configurations" in document:
        document = document["configurations"]
    if isinstance(document, Mapping):
        document = [document]
    if not isinstance(document, list) or not document:
        raise ConfigurationError(f"Configuration file {path} defines no configurations")
    configs = [RunConfiguration.from_dict(item) for item in document]
    ensure_distinct_outputs(configs)
    return configs


def select_configurations(
    names: Iterable[str],
    available: Mapping[str, RunConfiguration],
) -> list[RunConfiguration]:
    selected = []
    for name in names:
        try:
            selected.append(available[name])
        except KeyError as exc:
            known = ", ".join(sorted(available))
            raise ConfigurationError(f"Unknown configuration {name!r} (known: {known})") from exc
    ensure_distinct_outputs(selected)
    return selected


def ensure_distinct_outputs(configs: Sequence[RunConfiguration]) -> None:
    """Reject differently named configurations that would share an output directory."""
    clashes = _slug_clashes([config.name for config in configs])
    if clashes:
        raise ConfigurationError(f"Configurations would write to the same directory: {clashes}")


def _slug_clashes(names: Iterable[str]) -> str:
    groups: dict[str, set[str]] = {}
    for name in names:
        groups.setdefault(slug(name), set()).add(name)
    return "; ".join(
        f"{key}: " + ", ".join(repr(name) for name in sorted(group))
        for key, group in groups.items()
        if len(group) > 1
    )


def _require_at_least(config_name: str, field_name: str, value: int, minimum: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
        raise ConfigurationError(
            f"RunConfiguration {config_name!r}: {field_name} must be an integer >= {minimum}, got {value!r}"
        )


__all__ = [
    "RunConfiguration",
    "RunOrder",
    "default_configurations",
    "ensure_distinct_outputs",
    "load_configurations",
    "select_configurations",
]
