from __future__ import annotations

import re
from pathlib import Path, PurePosixPath

CONTAINER_RESULTS_ROOT = "/results"
DEFAULT_LOCAL_RESULTS_ROOT = "./results"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def slug(value: str) -> str:
    """Make an agent or configuration name safe for file and recording names."""
    cleaned = _UNSAFE_CHARS.sub("_", value.strip())
    return cleaned or "_"


def run_name(agent_name: str, pass_index: int) -> str:
    return f"{slug(agent_name)}-pass{pass_index}"


class NamingConvention:
    """Per-run artifact paths below a results root.

    The same relative layout is used on the host and inside containers, so a
    container path maps onto the host path that is bound to it.
    """

    def __init__(self, root: str | Path, path_type: type = Path) -> None:
        self._path_type = path_type
        self._root = path_type(root)

    @property
    def root(self):
        return self._root

    def config_dir(self, config_name: str):
        return self._root / slug(config_name)

    def runs_dir(self, config_name: str):
        return self.config_dir(config_name) / "runs"

    def k6_results(self, config_name: str, agent_name: str, pass_index: int):
        return self.runs_dir(config_name) / f"k6_out_{run_name(agent_name, pass_index)}.json"

    def jfr_file(self, config_name: str, agent_name: str, pass_index: int):
        return self.runs_dir(config_name) / f"petclinic-{run_name(agent_name, pass_index)}.jfr"

    def warmup_jfr_file(self, config_name: str, agent_name: str, pass_index: int):
        return self.runs_dir(config_name) / f"warmup-{run_name(agent_name, pass_index)}.jfr"

    def startup_duration_file(self, config_name: str, agent_name: str, pass_index: int):
        return self.runs_dir(config_name) / f"startup-time-{run_name(agent_name, pass_index)}.txt"

    def relative_to_root(self, path) -> PurePosixPath:
        return PurePosixPath(self._path_type(path).relative_to(self._root).as_posix())


class NamingConventions:
    """Holds both the host (local) and the container naming conventions."""

    def __init__(
        self,
        local_root: str | Path = DEFAULT_LOCAL_RESULTS_ROOT,
        container_root: str = CONTAINER_RESULTS_ROOT,
    ) -> None:
        self.local = NamingConvention(Path(local_root).resolve())
        self.container = NamingConvention(container_root, path_type=PurePosixPath)

    def local_results(self) -> Path:
        return self.local.root

    def container_results(self) -> PurePosixPath:
        return self.container.root

    def to_local(self, container_path: str | PurePosixPath) -> Path:
        """Map a path inside the container results root onto the host."""
        relative = self.container.relative_to_root(container_path)
        return self.local.root.joinpath(*relative.parts)


__all__ = [
    "CONTAINER_RESULTS_ROOT",
    "NamingConvention",
    "NamingConventions",
    "run_name",
    "slug",
]
