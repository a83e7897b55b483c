from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path

from .agents import Agent
from .config import RunConfiguration
from .environment import ContainerSpec, HealthCheck, exec_health_check, http_health_check
from .naming import NamingConventions, run_name, slug

BASE_DIR = Path(__file__).resolve().parent
RESOURCES_DIR = BASE_DIR / "resources"
K6_SCRIPTS_DIR = RESOURCES_DIR / "k6"
COLLECTOR_CONFIG = RESOURCES_DIR / "collector.yaml"
JFR_SETTINGS = RESOURCES_DIR / "overhead.jfc"

# Settings shipped with the JDK, referenced by name instead of by file.
BUILTIN_JFR_SETTINGS = ("default", "profile")

PETCLINIC_IMAGE = (
    "ghcr.io/open-telemetry/opentelemetry-java-instrumentation/petclinic-rest-base:20220711201901"
)
POSTGRES_IMAGE = "postgres:9.6.22"
COLLECTOR_IMAGE = "otel/opentelemetry-collector-contrib:0.55.0"
K6_IMAGE = "loadimpact/k6"

PETCLINIC_PORT = 9966
PETCLINIC_HEALTH_PATH = "/petclinic/actuator/health"
POSTGRES_PORT = 5432
OTLP_PORT = 4317
COLLECTOR_HEALTH_CHECK_PORT = 13133

DATABASE_NAME = "petclinic"
USERNAME = "petclinic"
PASSWORD = "petclinic"

TARGET_STARTUP_TIMEOUT_S = 5 * 60.0
DATABASE_STARTUP_TIMEOUT_S = 2 * 60.0
COLLECTOR_STARTUP_TIMEOUT_S = 60.0

WARMUP_VUS = 5
WARMUP_ITERATIONS = 200


@dataclass(frozen=True)
class ServiceDefinition:
    """A container spec together with its readiness criterion."""

    spec: ContainerSpec
    health_check: HealthCheck
    startup_timeout_s: float


class PetClinicStack:
    """Container definitions for the PetClinic overhead benchmark.

    Postgres and the target are started per run, the OpenTelemetry collector
    once per configuration, and k6 as a one-shot container writing its summary
    into the bound results root. With ``externals_host`` both Postgres and the
    collector are expected on that host and neither is started here; an
    explicit ``collector_endpoint`` overrides the collector location.
    """

    def __init__(
        self,
        naming: NamingConventions,
        collector_endpoint: str | None = None,
        externals_host: str | None = None,
        jfr_settings: str | Path = JFR_SETTINGS,
        db_init_dir: str | Path | None = None,
        k6_scripts_dir: str | Path = K6_SCRIPTS_DIR,
        target_startup_timeout_s: float = TARGET_STARTUP_TIMEOUT_S,
        database_startup_timeout_s: float = DATABASE_STARTUP_TIMEOUT_S,
    ) -> None:
        self._naming = naming
        self._externals_host = externals_host or None
        self._external_collector = collector_endpoint or (
            f"http://{externals_host}:{OTLP_PORT}" if externals_host else None
        )
        self._jfr_settings = jfr_settings
        self._db_init_dir = Path(db_init_dir) if db_init_dir else None
        self._k6_scripts_dir = Path(k6_scripts_dir)
        self._target_startup_timeout_s = target_startup_timeout_s
        self._database_startup_timeout_s = database_startup_timeout_s

    @property
    def collector_endpoint(self) -> str:
        return self._external_collector or f"http://collector:{OTLP_PORT}"

    @property
    def database_host(self) -> str:
        return self._externals_host or "postgres"

    @property
    def recording_settings(self) -> str:
        """Value of the ``settings=`` option passed to ``JFR.start``."""
        if str(self._jfr_settings) in BUILTIN_JFR_SETTINGS:
            return str(self._jfr_settings)
        return f"/app/{Path(self._jfr_settings).name}"

    def database(self, agent: Agent, pass_index: int) -> ServiceDefinition | None:
        if self._externals_host:
            return None
        copy_files = {}
        if self._db_init_dir is not None:
            copy_files["/docker-entrypoint-initdb.d"] = str(self._db_init_dir)
        spec = ContainerSpec(
            image=POSTGRES_IMAGE,
            name=_container_name("postgres", run_name(agent.name, pass_index)),
            environment={
                "POSTGRES_USER": USERNAME,
                "POSTGRES_PASSWORD": PASSWORD,
                "POSTGRES_DB": DATABASE_NAME,
            },
            network_aliases=("postgres",),
            exposed_ports=(POSTGRES_PORT,),
            copy_files=copy_files,
        )
        # The entrypoint runs init scripts against a socket-only server, so a
        # TCP check only succeeds once the final server is accepting.
        check = exec_health_check(
            ["pg_isready", "-h", "localhost", "-U", USERNAME, "-d", DATABASE_NAME]
        )
        return ServiceDefinition(spec, check, self._database_startup_timeout_s)

    def collector(self) -> ServiceDefinition | None:
        if self._external_collector:
            return None
        spec = ContainerSpec(
            image=COLLECTOR_IMAGE,
            name=_container_name("collector", "shared"),
            command=("--config=/etc/otel.yaml",),
            network_aliases=("collector",),
            exposed_ports=(OTLP_PORT, COLLECTOR_HEALTH_CHECK_PORT),
            copy_files={"/etc/otel.yaml": str(COLLECTOR_CONFIG)},
        )
        check = http_health_check("/health", COLLECTOR_HEALTH_CHECK_PORT)
        return ServiceDefinition(spec, check, COLLECTOR_STARTUP_TIMEOUT_S)

    def target(
        self,
        agent: Agent,
        pass_index: int,
        artifact: Path | None,
    ) -> ServiceDefinition:
        copy_files = {}
        if str(self._jfr_settings) not in BUILTIN_JFR_SETTINGS:
            copy_files[self.recording_settings] = str(self._jfr_settings)
        if artifact is not None:
            copy_files[f"/app/{artifact.name}"] = str(artifact)
        spec = ContainerSpec(
            image=PETCLINIC_IMAGE,
            name=_container_name("petclinic", run_name(agent.name, pass_index)),
            command=tuple(self.target_command(agent, artifact)),
            environment={
                "spring_profiles_active": "postgresql,spring-data-jpa",
                "spring_datasource_url": f"jdbc:postgresql://{self.database_host}:{POSTGRES_PORT}/{DATABASE_NAME}",
                "spring_datasource_username": USERNAME,
                "spring_datasource_password": PASSWORD,
                "spring.datasource.hikari.maximum-pool-size": "30",
                "spring_jpa_hibernate_ddl-auto": "none" if self._db_init_dir else "update",
            },
            network_aliases=("petclinic",),
            exposed_ports=(PETCLINIC_PORT,),
            volumes={str(self._naming.local_results()): str(self._naming.container_results())},
            copy_files=copy_files,
        )
        check = http_health_check(PETCLINIC_HEALTH_PATH, PETCLINIC_PORT)
        return ServiceDefinition(spec, check, self._target_startup_timeout_s)

    def target_command(self, agent: Agent, artifact: Path | None) -> list[str]:
        command = [
            "java",
            "-Xmx2g",
            "-XX:+AlwaysPreTouch",
            "-Dotel.traces.exporter=otlp",
            "-Dotel.imr.export.interval=5000",
            "-Dotel.exporter.otlp.insecure=true",
            f"-Dotel.exporter.otlp.endpoint={self.collector_endpoint}",
            "-Dotel.resource.attributes=service.name=petclinic-otel-overhead",
        ]
        command.extend(agent.extra_args)
        if artifact is not None:
            command.append(f"-javaagent:/app/{artifact.name}")
        command.extend(["-jar", "/app/spring-petclinic-rest.jar"])
        return command

    def load(self, config: RunConfiguration, agent: Agent, pass_index: int) -> ContainerSpec:
        summary = self._naming.container.k6_results(config.name, agent.name, pass_index)
        return self._k6_spec(
            name=_container_name("k6", run_name(agent.name, pass_index)),
            arguments=(
                "-u", str(config.concurrent_connections),
                "-i", str(config.iteration_count),
                "--rps", str(config.max_request_rate),
                "--summary-export", str(summary),
            ),
            bind_results=True,
        )

    def warmup_load(self, agent: Agent, pass_index: int) -> ContainerSpec:
        return self._k6_spec(
            name=_container_name("k6-warmup", run_name(agent.name, pass_index)),
            arguments=("-u", str(WARMUP_VUS), "-i", str(WARMUP_ITERATIONS)),
            bind_results=False,
        )

    def _k6_spec(self, name: str, arguments: tuple[str, ...], bind_results: bool) -> ContainerSpec:
        volumes = {}
        if bind_results:
            volumes[str(self._naming.local_results())] = str(self._naming.container_results())
        return ContainerSpec(
            image=K6_IMAGE,
            name=name,
            command=("run", *arguments, "/app/basic.js"),
            network_aliases=("k6",),
            volumes=volumes,
            copy_files={"/app": str(self._k6_scripts_dir)},
            user="root",
        )


def _container_name(role: str, scope: str) -> str:
    return f"overhead-{role}-{slug(scope)}-{uuid.uuid4().hex[:6]}"


__all__ = ["BUILTIN_JFR_SETTINGS", "JFR_SETTINGS", "PetClinicStack", "ServiceDefinition"]
