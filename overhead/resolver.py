"""Resolution of agent artifacts to local files.

Agents reference their jar through a locator: nothing at all for the
uninstrumented baseline, a ``file://`` URL or plain path for local builds, or
an ``http(s)://`` URL for published releases. Every locator is resolved to a
private copy inside the resolver's work directory, once per process.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Generic, Hashable, TypeVar
from urllib.parse import unquote, urlparse

import requests

from .errors import ResolutionError

LOGGER = logging.getLogger("overhead.resolver")

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
DOWNLOAD_TIMEOUT_SECONDS = 120.0

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SingleFlightCache(Generic[K, V]):
    """Thread-safe memo with single-flight semantics on a miss.

    The first caller for a key runs the loader; callers arriving while it is
    in flight block on the same future and observe the same value or the same
    exception. Failed loads are evicted, so a later call runs the loader again.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[K, Future] = {}

    def get_or_load(self, key: K, loader: Callable[[K], V]) -> V:
        with self._lock:
            future = self._entries.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._entries[key] = future

        if not owner:
            return future.result()

        try:
            value = loader(key)
        except BaseException as exc:
            with self._lock:
                if self._entries.get(key) is future:
                    del self._entries[key]
            future.set_exception(exc)
            raise
        future.set_result(value)
        return value

    def peek(self, key: K) -> V | None:
        """Return the loaded value for ``key`` without triggering a load."""
        with self._lock:
            future = self._entries.get(key)
        if future is None or not future.done() or future.exception() is not None:
            return None
        return future.result()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return self.peek(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            return sum(
                1
                for future in self._entries.values()
                if future.done() and future.exception() is None
            )


# Process-wide cache shared by every resolver that does not bring its own.
_ARTIFACT_CACHE: SingleFlightCache[str, Path] = SingleFlightCache()


class ArtifactResolver:
    """Resolve agent locators to local jar files inside ``work_dir``."""

    def __init__(
        self,
        work_dir: str | Path,
        session: requests.Session | None = None,
        cache: SingleFlightCache[str, Path] | None = None,
        timeout_s: float = DOWNLOAD_TIMEOUT_SECONDS,
    ) -> None:
        self._work_dir = Path(work_dir)
        self._session = session or requests.Session()
        self._cache = cache if cache is not None else _ARTIFACT_CACHE
        self._timeout_s = timeout_s

    @property
    def work_dir(self) -> Path:
        return self._work_dir

    def resolve(self, locator: str | None) -> Path | None:
        if locator is None:
            return None
        return self._cache.get_or_load(locator, self._resolve_uncached)

    def _resolve_uncached(self, locator: str) -> Path:
        parsed = urlparse(locator)
        scheme = parsed.scheme.lower()
        if scheme in ("http", "https"):
            return self._download(locator, parsed.path)
        if scheme == "file":
            return self._copy_local(locator, Path(unquote(parsed.path)))
        if scheme == "":
            return self._copy_local(locator, Path(locator).expanduser())
        raise ResolutionError(f"Unsupported artifact locator scheme {scheme!r}: {locator}")

    def _target_dir(self, locator: str) -> Path:
        digest = hashlib.sha256(locator.encode("utf-8")).hexdigest()[:16]
        target = self._work_dir / digest
        target.mkdir(parents=True, exist_ok=True)
        return target

    def _copy_local(self, locator: str, source: Path) -> Path:
        LOGGER.info("Copying agent artifact %s", source)
        try:
            if not source.is_file():
                raise ResolutionError(f"Agent artifact does not exist: {source}")
            target = self._target_dir(locator) / source.name
            shutil.copyfile(source, target)
        except OSError as exc:
            raise ResolutionError(f"Failed to copy the agent jar {locator}: {exc}") from exc
        return target.resolve()

    def _download(self, locator: str, url_path: str) -> Path:
        LOGGER.info("Downloading agent artifact %s", locator)
        filename = Path(unquote(url_path)).name or "javaagent.jar"
        tmp_name: str | None = None
        try:
            target_dir = self._target_dir(locator)
            with self._session.get(locator, stream=True, timeout=self._timeout_s) as response:
                response.raise_for_status()
                with tempfile.NamedTemporaryFile(
                    dir=target_dir, prefix="javaagent", suffix=".part", delete=False
                ) as handle:
                    tmp_name = handle.name
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
            target = target_dir / filename
            os.replace(tmp_name, target)
            tmp_name = None
        except requests.RequestException as exc:
            raise ResolutionError(f"Failed to download the agent jar {locator}: {exc}") from exc
        except OSError as exc:
            raise ResolutionError(f"Failed to store the agent jar {locator}: {exc}") from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
        LOGGER.info("Agent artifact %s stored at %s", locator, target)
        return target.resolve()


__all__ = ["ArtifactResolver", "SingleFlightCache"]
