"""Tests for ArtifactResolver and SingleFlightCache.

Covers: local copies, downloads, single-flight loading, failure eviction.
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests

from overhead.errors import ResolutionError
from overhead.resolver import ArtifactResolver, SingleFlightCache


class FakeResponse:
    def __init__(self, body: bytes, status_code: int = 200):
        self._body = body
        self.status_code = status_code

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self._body), 4):
            yield self._body[start:start + 4]


class FakeSession:
    def __init__(self, body: bytes = b"agent-jar-bytes", status_code: int = 200, gate=None):
        self.body = body
        self.status_code = status_code
        self.gate = gate
        self.calls = 0
        self.failures: list[Exception] = []
        self._lock = threading.Lock()

    def get(self, url, stream=False, timeout=None):
        with self._lock:
            self.calls += 1
            failure = self.failures.pop(0) if self.failures else None
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if failure is not None:
            raise failure
        return FakeResponse(self.body, self.status_code)


URL = "https://example.com/releases/download/v1.0.0/splunk-otel-javaagent.jar"


def test_no_locator_resolves_to_none(resolver):
    assert resolver.resolve(None) is None


def test_file_url_is_copied_into_work_dir(resolver, agent_jar):
    resolved = resolver.resolve(agent_jar.as_uri())

    assert resolved != agent_jar
    assert resolved.name == agent_jar.name
    assert resolver.work_dir.resolve() in resolved.parents
    agent_jar.unlink()
    assert resolved.read_bytes() == b"PK\x03\x04 fake agent"


def test_second_resolve_after_source_removal_reuses_the_copy(resolver, agent_jar):
    first = resolver.resolve(agent_jar.as_uri())
    agent_jar.unlink()

    second = resolver.resolve(agent_jar.as_uri())

    assert second == first
    assert second.read_bytes() == b"PK\x03\x04 fake agent"


def test_plain_path_is_copied(resolver, agent_jar):
    resolved = resolver.resolve(str(agent_jar))

    assert resolved.read_bytes() == agent_jar.read_bytes()
    assert resolved != agent_jar


def test_missing_local_artifact_raises(resolver, tmp_path):
    with pytest.raises(ResolutionError):
        resolver.resolve(str(tmp_path / "missing.jar"))


def test_unsupported_scheme_raises(resolver):
    with pytest.raises(ResolutionError):
        resolver.resolve("ftp://example.com/agent.jar")


def test_download_writes_the_url_filename(tmp_path):
    session = FakeSession()
    resolver = ArtifactResolver(tmp_path / "work", session=session, cache=SingleFlightCache())

    resolved = resolver.resolve(URL)

    assert resolved.name == "splunk-otel-javaagent.jar"
    assert resolved.read_bytes() == b"agent-jar-bytes"
    assert not list(resolved.parent.glob("*.part"))


def test_download_is_resolved_once_per_locator(tmp_path):
    session = FakeSession()
    resolver = ArtifactResolver(tmp_path / "work", session=session, cache=SingleFlightCache())

    first = resolver.resolve(URL)
    second = resolver.resolve(URL)

    assert first == second
    assert session.calls == 1


def test_concurrent_callers_share_one_download(tmp_path):
    gate = threading.Event()
    session = FakeSession(gate=gate)
    resolver = ArtifactResolver(tmp_path / "work", session=session, cache=SingleFlightCache())

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(resolver.resolve, URL) for _ in range(8)]
        gate.set()
        results = [future.result(timeout=10) for future in futures]

    assert session.calls == 1
    assert len(set(results)) == 1


def test_http_error_raises_resolution_error(tmp_path):
    session = FakeSession(status_code=404)
    resolver = ArtifactResolver(tmp_path / "work", session=session, cache=SingleFlightCache())

    with pytest.raises(ResolutionError):
        resolver.resolve(URL)


def test_failed_download_is_retried_on_next_call(tmp_path):
    session = FakeSession()
    session.failures.append(requests.ConnectionError("connection reset"))
    resolver = ArtifactResolver(tmp_path / "work", session=session, cache=SingleFlightCache())

    with pytest.raises(ResolutionError):
        resolver.resolve(URL)
    resolved = resolver.resolve(URL)

    assert resolved.read_bytes() == b"agent-jar-bytes"
    assert session.calls == 2


def test_cache_shares_failure_with_waiting_callers():
    cache: SingleFlightCache[str, int] = SingleFlightCache()
    started = threading.Event()
    release = threading.Event()
    calls = []

    def loader(key):
        calls.append(key)
        started.set()
        release.wait(timeout=5)
        raise RuntimeError("boom")

    with ThreadPoolExecutor(max_workers=2) as pool:
        owner = pool.submit(cache.get_or_load, "a", loader)
        started.wait(timeout=5)
        waiter = pool.submit(cache.get_or_load, "a", loader)
        release.set()
        with pytest.raises(RuntimeError):
            owner.result(timeout=5)
        with pytest.raises(RuntimeError):
            waiter.result(timeout=5)

    assert "a" not in cache
    assert len(cache) == 0


def test_cache_peek_and_clear():
    cache: SingleFlightCache[str, int] = SingleFlightCache()

    assert cache.peek("a") is None
    assert cache.get_or_load("a", lambda key: 1) == 1
    assert cache.peek("a") == 1
    assert "a" in cache
    cache.clear()
    assert len(cache) == 0
