from __future__ import annotations

import io
import tarfile
from unittest.mock import MagicMock

import pytest
import requests
from docker.errors import NotFound

from overhead.docker_control import DockerEnvironment
from overhead.environment import ContainerHandle, ContainerSpec


@pytest.fixture
def client():
    client = MagicMock()
    client.networks.get.side_effect = NotFound("no such network")
    return client


@pytest.fixture
def docker_env(client):
    return DockerEnvironment(network_name="overhead-test", client=client)


def _spec(tmp_path, **overrides):
    agent = tmp_path / "agent.jar"
    agent.write_bytes(b"jar")
    values = dict(
        image="petclinic:latest",
        name="overhead-petclinic-none-pass0-abc123",
        command=("java", "-jar", "/app/app.jar"),
        environment={"A": "1"},
        network_aliases=("petclinic",),
        exposed_ports=(9966,),
        volumes={str(tmp_path / "results"): "/results"},
        copy_files={"/app/agent.jar": str(agent)},
    )
    values.update(overrides)
    return ContainerSpec(**values)


def test_start_creates_connects_copies_and_starts(docker_env, client, tmp_path):
    container = client.containers.create.return_value

    handle = docker_env.start(_spec(tmp_path))

    assert handle.ref is container
    kwargs = client.containers.create.call_args.kwargs
    assert client.containers.create.call_args.args == ("petclinic:latest",)
    assert kwargs["ports"] == {"9966/tcp": None}
    assert kwargs["volumes"] == {str(tmp_path / "results"): {"bind": "/results", "mode": "rw"}}
    assert (tmp_path / "results").is_dir()
    client.networks.create.assert_called_once_with("overhead-test", driver="bridge")
    client.networks.create.return_value.connect.assert_called_once_with(container, aliases=["petclinic"])
    path, archive = container.put_archive.call_args.args
    assert path == "/app"
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        assert tar.getnames() == ["agent.jar"]
    container.start.assert_called_once_with()


def test_start_failure_removes_the_container(docker_env, client, tmp_path):
    container = client.containers.create.return_value
    container.start.side_effect = RuntimeError("port already allocated")

    with pytest.raises(RuntimeError):
        docker_env.start(_spec(tmp_path))

    container.remove.assert_called_once_with(force=True)


def test_network_is_reused_when_it_exists(client, tmp_path):
    client.networks.get.side_effect = None
    env = DockerEnvironment(network_name="shared", client=client)

    env.start(_spec(tmp_path))
    env.start(_spec(tmp_path, name="second"))
    env.close()

    client.networks.get.assert_called_once_with("shared")
    client.networks.create.assert_not_called()
    client.networks.get.return_value.remove.assert_not_called()


def test_close_removes_an_owned_network(docker_env, client, tmp_path):
    docker_env.start(_spec(tmp_path))

    docker_env.close()

    client.networks.create.return_value.remove.assert_called_once_with()


def test_stop_ignores_missing_containers(docker_env):
    container = MagicMock()
    container.stop.side_effect = NotFound("gone")

    docker_env.stop(ContainerHandle(spec=ContainerSpec(image="x", name="x"), ref=container))

    container.remove.assert_not_called()


def test_stop_removes_the_container(docker_env):
    container = MagicMock()

    docker_env.stop(ContainerHandle(spec=ContainerSpec(image="x", name="x"), ref=container))

    container.stop.assert_called_once_with(timeout=10)
    container.remove.assert_called_once_with(force=True)


def test_exec_decodes_output(docker_env):
    container = MagicMock()
    container.exec_run.return_value = (0, b"Started recording 1\n")

    result = docker_env.exec(ContainerHandle(spec=ContainerSpec(image="x", name="x"), ref=container), ["jcmd", "1"])

    container.exec_run.assert_called_once_with(["jcmd", "1"])
    assert result.ok
    assert result.output == "Started recording 1\n"


def test_is_running_reads_container_state(docker_env):
    container = MagicMock()
    container.attrs = {"State": {"Running": False}}
    handle = ContainerHandle(spec=ContainerSpec(image="x", name="x"), ref=container)

    assert docker_env.is_running(handle) is False
    container.reload.side_effect = NotFound("gone")
    assert docker_env.is_running(handle) is False


def test_run_to_completion_returns_exit_code(docker_env, client, tmp_path):
    container = client.containers.create.return_value
    container.wait.return_value = {"StatusCode": 0}

    assert docker_env.run_to_completion(_spec(tmp_path, copy_files={}), timeout_s=60) == 0

    container.wait.assert_called_once_with(timeout=60)
    container.remove.assert_called_once_with(force=True)


def test_run_to_completion_kills_on_timeout(docker_env, client, tmp_path):
    container = client.containers.create.return_value
    container.wait.side_effect = requests.exceptions.ReadTimeout("timed out")

    with pytest.raises(TimeoutError):
        docker_env.run_to_completion(_spec(tmp_path, copy_files={}), timeout_s=1)

    container.kill.assert_called_once_with()
    container.remove.assert_called_once_with(force=True)


def test_host_address_maps_wildcard_to_localhost(docker_env):
    container = MagicMock()
    container.attrs = {"NetworkSettings": {"Ports": {"9966/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32768"}]}}}

    address = docker_env.host_address(ContainerHandle(spec=ContainerSpec(image="x", name="x"), ref=container), 9966)

    assert address == ("localhost", 32768)


def test_bind_mounts_do_not_depend_on_docker_host(docker_env, client, tmp_path, monkeypatch):
    monkeypatch.setenv("DOCKER_HOST", "tcp://docker.example:2375")

    docker_env.start(_spec(tmp_path))

    kwargs = client.containers.create.call_args.kwargs
    assert kwargs["volumes"] == {str(tmp_path / "results"): {"bind": "/results", "mode": "rw"}}
