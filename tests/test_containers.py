from __future__ import annotations

from pathlib import Path

from overhead.agents import NONE, SPLUNK_PROFILER
from overhead.containers import COLLECTOR_IMAGE, JFR_SETTINGS, PETCLINIC_IMAGE, PetClinicStack


def test_uninstrumented_target_has_no_javaagent(stack):
    command = stack.target_command(NONE, None)

    assert not any(arg.startswith("-javaagent") for arg in command)
    assert command[-2:] == ["-jar", "/app/spring-petclinic-rest.jar"]


def test_instrumented_target_appends_extra_args_then_javaagent(stack):
    command = stack.target_command(SPLUNK_PROFILER, Path("/work/abc/splunk-otel-javaagent.jar"))

    profiler = command.index("-Dsplunk.profiler.enabled=true")
    javaagent = command.index("-javaagent:/app/splunk-otel-javaagent.jar")
    assert profiler < javaagent < command.index("-jar")
    assert "-Dotel.exporter.otlp.endpoint=http://collector:4317" in command


def test_target_copies_artifact_and_binds_results(stack, naming, tmp_path):
    artifact = tmp_path / "agent.jar"

    definition = stack.target(SPLUNK_PROFILER, 1, artifact)

    spec = definition.spec
    assert spec.image == PETCLINIC_IMAGE
    assert spec.copy_files == {
        "/app/overhead.jfc": str(JFR_SETTINGS),
        "/app/agent.jar": str(artifact),
    }
    assert spec.volumes == {str(naming.local_results()): "/results"}
    assert spec.network_aliases == ("petclinic",)
    assert "cpu_text-pass1" in spec.name
    assert spec.environment["spring_jpa_hibernate_ddl-auto"] == "update"


def test_database_with_init_scripts_disables_schema_generation(naming, tmp_path):
    stack = PetClinicStack(naming, db_init_dir=tmp_path / "initdb")

    database = stack.database(NONE, 0)
    target = stack.target(NONE, 0, None)

    assert database.spec.copy_files == {"/docker-entrypoint-initdb.d": str(tmp_path / "initdb")}
    assert database.spec.network_aliases == ("postgres",)
    assert target.spec.environment["spring_jpa_hibernate_ddl-auto"] == "none"


def test_external_collector_is_not_started(naming):
    stack = PetClinicStack(naming, collector_endpoint="http://otel.example:4317")

    assert stack.collector() is None
    assert "-Dotel.exporter.otlp.endpoint=http://otel.example:4317" in stack.target_command(NONE, None)


def test_shared_collector_definition(stack):
    definition = stack.collector()

    assert definition.spec.image == COLLECTOR_IMAGE
    assert definition.spec.network_aliases == ("collector",)
    assert "/etc/otel.yaml" in definition.spec.copy_files
    assert Path(definition.spec.copy_files["/etc/otel.yaml"]).is_file()


def test_load_spec_exports_summary_into_results(stack, make_config):
    config = make_config([NONE], concurrent_connections=5, iteration_count=500, max_request_rate=0)

    spec = stack.load(config, NONE, 2)

    assert spec.command == (
        "run",
        "-u", "5",
        "-i", "500",
        "--rps", "0",
        "--summary-export", "/results/test-config/runs/k6_out_none-pass2.json",
        "/app/basic.js",
    )
    assert spec.user == "root"
    assert list(spec.volumes.values()) == ["/results"]
    assert Path(spec.copy_files["/app"]).joinpath("basic.js").is_file()


def test_warmup_load_is_a_short_burst(stack):
    spec = stack.warmup_load(NONE, 0)

    assert spec.command == ("run", "-u", "5", "-i", "200", "/app/basic.js")
    assert spec.volumes == {}


def test_bundled_recording_settings_are_copied_into_target(stack):
    spec = stack.target(NONE, 0, None).spec

    assert stack.recording_settings == "/app/overhead.jfc"
    assert spec.copy_files == {"/app/overhead.jfc": str(JFR_SETTINGS)}
    assert JFR_SETTINGS.is_file()
    assert "<configuration" in JFR_SETTINGS.read_text(encoding="utf-8")


def test_custom_recording_settings_file(naming, tmp_path):
    settings = tmp_path / "lean.jfc"
    settings.write_text("<configuration version=\"2.0\"/>", encoding="utf-8")
    stack = PetClinicStack(naming, jfr_settings=settings)

    assert stack.recording_settings == "/app/lean.jfc"
    assert stack.target(NONE, 0, None).spec.copy_files == {"/app/lean.jfc": str(settings)}


def test_builtin_recording_settings_copy_nothing(naming):
    stack = PetClinicStack(naming, jfr_settings="profile")

    assert stack.recording_settings == "profile"
    assert stack.target(NONE, 0, None).spec.copy_files == {}


def test_externals_host_replaces_database_and_collector(naming):
    stack = PetClinicStack(naming, externals_host="10.0.0.7")

    target = stack.target(NONE, 0, None)

    assert stack.database(NONE, 0) is None
    assert stack.collector() is None
    assert target.spec.environment["spring_datasource_url"] == "jdbc:postgresql://10.0.0.7:5432/petclinic"
    assert "-Dotel.exporter.otlp.endpoint=http://10.0.0.7:4317" in stack.target_command(NONE, None)


def test_explicit_collector_endpoint_wins_over_externals_host(naming):
    stack = PetClinicStack(naming, externals_host="10.0.0.7", collector_endpoint="http://otel.example:4317")

    assert stack.collector_endpoint == "http://otel.example:4317"


def test_local_database_is_reached_through_network_alias(stack):
    target = stack.target(NONE, 0, None)

    assert stack.database(NONE, 0) is not None
    assert target.spec.environment["spring_datasource_url"] == "jdbc:postgresql://postgres:5432/petclinic"
