from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .errors import ConfigurationError

LATEST_VERSION = "1.16.0"
OTEL_VERSION = "1.16.0"


@dataclass(frozen=True)
class Agent:
    """Instrumentation variant attached to the target application.

    ``locator`` is either ``None`` (no instrumentation), a ``file://`` URL, a
    plain local path or an ``http(s)://`` URL pointing at the agent jar.
    """

    name: str
    description: str = ""
    version: str | None = None
    locator: str | None = None
    extra_args: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigurationError(f"Agent name must be a non-empty string, got {self.name!r}")
        if self.locator is not None and not isinstance(self.locator, str):
            raise ConfigurationError(f"Agent {self.name!r}: locator must be a string, got {self.locator!r}")
        if isinstance(self.extra_args, (str, bytes)) or not isinstance(self.extra_args, Iterable):
            raise ConfigurationError(f"Agent {self.name!r}: extra_args must be a list of flags")
        # Accept any iterable of flags but store an immutable tuple.
        object.__setattr__(self, "extra_args", tuple(self.extra_args))
        if not all(isinstance(arg, str) for arg in self.extra_args):
            raise ConfigurationError(f"Agent {self.name!r}: every extra argument must be a string")

    @property
    def instrumented(self) -> bool:
        return self.locator is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "locator": self.locator,
            "extra_args": list(self.extra_args),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Agent":
        try:
            name = data["name"]
        except KeyError as exc:
            raise ConfigurationError("Agent definition requires a 'name'") from exc
        return cls(
            name=name,
            description=data.get("description", ""),
            version=data.get("version"),
            locator=data.get("locator") or data.get("url"),
            extra_args=data.get("extra_args") or (),
        )


def splunk_agent_url(version: str) -> str:
    return (
        "https://github.com/signalfx/splunk-otel-java/releases/download/"
        f"v{version}/splunk-otel-javaagent.jar"
    )


def otel_agent_url(version: str) -> str:
    return (
        "https://github.com/open-telemetry/opentelemetry-java-instrumentation/"
        f"releases/download/v{version}/opentelemetry-javaagent.jar"
    )


NONE = Agent(name="none", description="No Instrumentation")

OTEL = Agent(
    name="otel",
    description="OpenTelemetry Instrumentation for Java",
    version=OTEL_VERSION,
    locator=otel_agent_url(OTEL_VERSION),
)

SPLUNK_OTEL = Agent(
    name="splunk-otel",
    description="Splunk OpenTelemetry Java agent",
    version=LATEST_VERSION,
    locator=splunk_agent_url(LATEST_VERSION),
)

SPLUNK_1_13 = Agent(
    name="splunk-1.13.1",
    description="Splunk OpenTelemetry Java agent",
    version="1.13.1",
    locator=splunk_agent_url("1.13.1"),
)

SPLUNK_1_14 = Agent(
    name="splunk-1.14.0",
    description="Splunk OpenTelemetry Java agent",
    version="1.14.0",
    locator=splunk_agent_url("1.14.0"),
)

SPLUNK_PROFILER = Agent(
    name="cpu:text",
    description="Splunk OpenTelemetry Java agent with AlwaysOn Profiling",
    version=LATEST_VERSION,
    locator=splunk_agent_url(LATEST_VERSION),
    extra_args=("-Dsplunk.profiler.enabled=true",),
)

CATALOG: dict[str, Agent] = {
    agent.name: agent
    for agent in (NONE, OTEL, SPLUNK_OTEL, SPLUNK_1_13, SPLUNK_1_14, SPLUNK_PROFILER)
}


def agent_by_name(name: str) -> Agent:
    try:
        return CATALOG[name]
    except KeyError as exc:
        known = ", ".join(sorted(CATALOG))
        raise ConfigurationError(f"Unknown agent {name!r} (known: {known})") from exc


def agents_from_definitions(definitions: Iterable[str | Mapping[str, Any]]) -> tuple[Agent, ...]:
    """Build agents from catalog names or inline mappings, preserving order."""
    if isinstance(definitions, (str, bytes, Mapping)) or not isinstance(definitions, Iterable):
        raise ConfigurationError(f"Agents must be given as a list, got {definitions!r}")
    agents: list[Agent] = []
    for definition in definitions:
        if isinstance(definition, str):
            agents.append(agent_by_name(definition))
        elif isinstance(definition, Mapping):
            agents.append(Agent.from_dict(definition))
        else:
            raise ConfigurationError(f"Agent definition must be a name or a mapping, got {definition!r}")
    return tuple(agents)


__all__ = [
    "Agent",
    "CATALOG",
    "NONE",
    "OTEL",
    "SPLUNK_OTEL",
    "SPLUNK_1_13",
    "SPLUNK_1_14",
    "SPLUNK_PROFILER",
    "agent_by_name",
    "agents_from_definitions",
]
