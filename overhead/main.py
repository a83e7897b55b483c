from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from docker.errors import DockerException

from .collector import ResultsCollector
from .config import (
    RunConfiguration,
    default_configurations,
    load_configurations,
    select_configurations,
)
from .containers import (
    DATABASE_STARTUP_TIMEOUT_S,
    JFR_SETTINGS,
    TARGET_STARTUP_TIMEOUT_S,
    PetClinicStack,
)
from .docker_control import DockerEnvironment
from .errors import OverheadError
from .load import LOAD_TIMEOUT_S, K6LoadTool
from .naming import DEFAULT_LOCAL_RESULTS_ROOT, NamingConventions, slug
from .orchestrator import SHUTDOWN_TIMEOUT_S, RunOrchestrator
from .persister import MainResultsPersister
from .resolver import ArtifactResolver

LOGGER = logging.getLogger("overhead.main")

EXIT_OK = 0
EXIT_RUN_FAILURES = 1
EXIT_ERROR = 2

RUN_LOG_FILENAME = "run.log"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Java agent overhead benchmark")
    parser.add_argument(
        "--config",
        action="append",
        dest="configs",
        help="Name of a run configuration to execute (repeatable). "
        "Defaults to OVERHEAD_CONFIG (comma-separated) or 'release'",
    )
    parser.add_argument(
        "--config-file",
        default=os.environ.get("OVERHEAD_CONFIG_FILE"),
        help="JSON or YAML file with additional run configurations",
    )
    parser.add_argument(
        "--results-dir",
        default=os.environ.get("OVERHEAD_RESULTS_DIR", DEFAULT_LOCAL_RESULTS_ROOT),
        help="Directory receiving per-configuration results",
    )
    parser.add_argument(
        "--work-dir",
        default=os.environ.get("OVERHEAD_WORK_DIR", "./.overhead-work"),
        help="Directory for downloaded and copied agent jars",
    )
    parser.add_argument(
        "--network",
        default=os.environ.get("OVERHEAD_NETWORK"),
        help="Docker network to attach every container to (created when missing)",
    )
    parser.add_argument(
        "--collector-endpoint",
        default=os.environ.get("OVERHEAD_COLLECTOR_ENDPOINT"),
        help="Use an external OTLP collector instead of starting one",
    )
    parser.add_argument(
        "--externals-host",
        default=os.environ.get("OVERHEAD_EXTERNALS_HOST"),
        help="Host already running Postgres and the OTLP collector; neither is started",
    )
    parser.add_argument(
        "--jfr-settings",
        default=os.environ.get("OVERHEAD_JFR_SETTINGS", str(JFR_SETTINGS)),
        help="JFR settings file for the recordings, or a built-in name such as 'profile'",
    )
    parser.add_argument(
        "--db-init-dir",
        default=os.environ.get("OVERHEAD_DB_INIT_DIR"),
        help="Directory of SQL scripts copied into the database init directory",
    )
    parser.add_argument(
        "--progress-file",
        default=os.environ.get("OVERHEAD_PROGRESS_FILE"),
        help="File overwritten with the current progress line",
    )
    parser.add_argument(
        "--startup-timeout",
        type=float,
        default=float(os.environ.get("OVERHEAD_STARTUP_TIMEOUT", TARGET_STARTUP_TIMEOUT_S)),
        help="Seconds to wait for the target to become healthy",
    )
    parser.add_argument(
        "--database-timeout",
        type=float,
        default=float(os.environ.get("OVERHEAD_DATABASE_TIMEOUT", DATABASE_STARTUP_TIMEOUT_S)),
        help="Seconds to wait for the database to accept connections",
    )
    parser.add_argument(
        "--load-timeout",
        type=float,
        default=float(os.environ.get("OVERHEAD_LOAD_TIMEOUT", LOAD_TIMEOUT_S)),
        help="Seconds a measured k6 run may take",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=float(os.environ.get("OVERHEAD_SHUTDOWN_TIMEOUT", SHUTDOWN_TIMEOUT_S)),
        help="Seconds to wait for the target to exit after SIGTERM",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned runs without executing them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("OVERHEAD_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    args = parser.parse_args(argv)
    if not args.configs:
        env_configs = os.environ.get("OVERHEAD_CONFIG", "")
        args.configs = [item.strip() for item in env_configs.split(",") if item.strip()]
    return args


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def configure_run_log(log_path: Path) -> logging.Handler:
    """Mirror every ``overhead`` log line of one configuration into ``log_path``."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logging.getLogger("overhead").addHandler(handler)
    return handler


def release_run_log(handler: logging.Handler) -> None:
    logging.getLogger("overhead").removeHandler(handler)
    handler.close()


def resolve_configurations(names: Sequence[str], config_file: str | None) -> list[RunConfiguration]:
    available = default_configurations()
    if config_file:
        from_file = load_configurations(config_file)
        if not names:
            return from_file
        available.update({config.name: config for config in from_file})
    return select_configurations(names or ["release"], available)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        configs = resolve_configurations(args.configs, args.config_file)
    except OverheadError as exc:
        LOGGER.error("%s", exc)
        return EXIT_ERROR

    naming = NamingConventions(local_root=args.results_dir)
    LOGGER.info("Results directory: %s", naming.local_results())
    LOGGER.info("Configurations: %s", ", ".join(config.name for config in configs))

    if args.dry_run:
        _print_plan(configs)
        return EXIT_OK

    try:
        environment = DockerEnvironment(network_name=args.network)
    except DockerException as exc:
        LOGGER.error("Unable to connect to Docker: %s", exc)
        return EXIT_ERROR

    stack = PetClinicStack(
        naming,
        collector_endpoint=args.collector_endpoint,
        externals_host=args.externals_host,
        jfr_settings=args.jfr_settings,
        db_init_dir=args.db_init_dir,
        target_startup_timeout_s=args.startup_timeout,
        database_startup_timeout_s=args.database_timeout,
    )
    orchestrator = RunOrchestrator(
        environment,
        stack,
        ArtifactResolver(args.work_dir),
        naming,
        load_tool=K6LoadTool(environment, stack, timeout_s=args.load_timeout),
        shutdown_timeout_s=args.shutdown_timeout,
        progress_file=args.progress_file,
    )

    exit_code = EXIT_OK
    try:
        for config in configs:
            try:
                handler = configure_run_log(naming.local.config_dir(config.name) / RUN_LOG_FILENAME)
            except OSError as exc:
                LOGGER.error("Unable to open the run log for %s: %s", config.name, exc)
                exit_code = EXIT_ERROR
                continue
            try:
                report = orchestrator.execute(
                    config,
                    ResultsCollector(naming.local),
                    MainResultsPersister(config, naming.local_results()),
                )
            except OverheadError as exc:
                LOGGER.exception("Configuration %s aborted: %s", config.name, exc)
                exit_code = EXIT_ERROR
                continue
            finally:
                release_run_log(handler)
            if report.failures and exit_code == EXIT_OK:
                exit_code = EXIT_RUN_FAILURES
    finally:
        environment.close()
    return exit_code


def _print_plan(configs: Sequence[RunConfiguration]) -> None:
    for config in configs:
        print(f"Configuration: {config.name} ({config.description})")
        print(
            f"  passes={config.number_of_passes} connections={config.concurrent_connections} "
            f"iterations={config.iteration_count} max_rate={config.max_request_rate or 'uncapped'} "
            f"warmup={config.warmup_seconds}s order={config.order.value} "
            f"output={slug(config.name)}/"
        )
        for agent in config.agents:
            print(
                f"  - {agent.name}: {agent.description or '-'}"
                f" version={agent.version or '-'} locator={agent.locator or '<none>'}"
                + (f" args={' '.join(agent.extra_args)}" if agent.extra_args else "")
            )


if __name__ == "__main__":
    sys.exit(main())
