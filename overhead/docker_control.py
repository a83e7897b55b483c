from __future__ import annotations

import contextlib
import io
import logging
import tarfile
import time
import uuid
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Sequence

import docker
import requests
from docker.errors import DockerException, NotFound
from docker.models.containers import Container

from .environment import ContainerHandle, ContainerSpec, EnvironmentAdapter, ExecResult

LOGGER = logging.getLogger("overhead.docker")

STOP_TIMEOUT_SECONDS = 10


class DockerEnvironment(EnvironmentAdapter):
    """Run the benchmark stack as containers on one bridge network using the Docker API."""

    def __init__(
        self,
        network_name: str | None = None,
        client: docker.DockerClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(clock=clock, sleep=sleep)
        self._client = client or docker.from_env()
        self._network_name = network_name or f"overhead-{uuid.uuid4().hex[:8]}"
        self._network = None
        self._owns_network = False

    @property
    def network_name(self) -> str:
        return self._network_name

    def start(self, spec: ContainerSpec) -> ContainerHandle:
        LOGGER.info("Starting container %s", spec.describe())
        container = self._client.containers.create(
            spec.image,
            command=list(spec.command) or None,
            name=spec.name,
            environment=dict(spec.environment),
            volumes=self._volumes(spec),
            ports={f"{port}/tcp": None for port in spec.exposed_ports},
            user=spec.user,
        )
        try:
            self._ensure_network().connect(container, aliases=list(spec.network_aliases))
            self._copy_files(container, spec)
            container.start()
        except Exception:
            with contextlib.suppress(DockerException):
                container.remove(force=True)
            raise
        return ContainerHandle(spec=spec, ref=container)

    def stop(self, handle: ContainerHandle) -> None:
        container: Container = handle.ref
        LOGGER.info("Stopping container %s", handle.spec.describe())
        try:
            container.stop(timeout=STOP_TIMEOUT_SECONDS)
        except NotFound:
            return
        with contextlib.suppress(DockerException):
            container.remove(force=True)

    def exec(self, handle: ContainerHandle, command: Sequence[str]) -> ExecResult:
        container: Container = handle.ref
        LOGGER.debug("Exec in %s: %s", handle.spec.name, " ".join(command))
        exit_code, output = container.exec_run(list(command))
        text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else str(output or "")
        return ExecResult(exit_code=exit_code if exit_code is not None else -1, output=text)

    def is_running(self, handle: ContainerHandle) -> bool:
        container: Container = handle.ref
        try:
            container.reload()
        except NotFound:
            return False
        return container.attrs.get("State", {}).get("Running", False)

    def run_to_completion(self, spec: ContainerSpec, timeout_s: float) -> int:
        handle = self.start(spec)
        container: Container = handle.ref
        try:
            try:
                result = container.wait(timeout=timeout_s)
            except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError) as exc:
                with contextlib.suppress(DockerException):
                    container.kill()
                raise TimeoutError(f"{spec.describe()} did not finish within {timeout_s:.0f}s") from exc
            exit_code = int(result.get("StatusCode", -1))
            if exit_code != 0:
                with contextlib.suppress(DockerException):
                    tail = container.logs(tail=50).decode("utf-8", errors="replace")
                    LOGGER.warning("%s exited with %d:\n%s", spec.describe(), exit_code, tail)
            return exit_code
        finally:
            with contextlib.suppress(DockerException):
                container.remove(force=True)

    def host_address(self, handle: ContainerHandle, port: int) -> tuple[str, int]:
        container: Container = handle.ref
        container.reload()
        bindings = container.attrs.get("NetworkSettings", {}).get("Ports", {}).get(f"{port}/tcp")
        if not bindings:
            raise RuntimeError(f"Port {port} of {handle.spec.name} is not published")
        host_ip = bindings[0].get("HostIp") or "localhost"
        if host_ip in ("0.0.0.0", "::"):
            host_ip = "localhost"
        return host_ip, int(bindings[0]["HostPort"])

    def close(self) -> None:
        if self._network is not None and self._owns_network:
            LOGGER.info("Removing network %s", self._network_name)
            with contextlib.suppress(DockerException):
                self._network.remove()
        self._network = None

    def _ensure_network(self):
        if self._network is None:
            try:
                self._network = self._client.networks.get(self._network_name)
            except NotFound:
                LOGGER.info("Creating network %s", self._network_name)
                self._network = self._client.networks.create(self._network_name, driver="bridge")
                self._owns_network = True
        return self._network

    def _volumes(self, spec: ContainerSpec) -> Dict[str, dict]:
        volumes = {}
        for host_path, container_path in spec.volumes.items():
            Path(host_path).mkdir(parents=True, exist_ok=True)
            volumes[str(host_path)] = {"bind": str(container_path), "mode": "rw"}
        return volumes

    def _copy_files(self, container: Container, spec: ContainerSpec) -> None:
        for container_path, host_path in spec.copy_files.items():
            destination = PurePosixPath(container_path)
            container.put_archive(str(destination.parent), _tar_single(Path(host_path), destination.name))


def _tar_single(source: Path, arcname: str) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        if source.is_dir():
            archive.add(str(source), arcname=arcname, recursive=True)
        else:
            archive.add(str(source), arcname=arcname)
    return buffer.getvalue()


__all__ = ["DockerEnvironment"]
