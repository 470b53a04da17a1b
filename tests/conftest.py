"""
Shared pytest fixtures for kgsync tests.

This module provides:
- Deterministic retry policies and a recording sleep (no test ever waits)
- ``httpx.MockTransport`` wiring for the resilient transport
- An in-memory triple store speaking the RDF4J statements protocol
- Identifier resolver and cursor store fixtures

Usage:
    Fixtures are auto-discovered by pytest.

    async def test_upload(store_transport, memory_store):
        ...
"""

from __future__ import annotations

import random
import re
from collections.abc import Callable, Iterator
from pathlib import Path

import httpx
import pytest
import structlog

from kgsync.core.identifiers import IdentifierResolver
from kgsync.core.watermarks import CursorStore
from kgsync.execution.retry import RetryPolicy
from kgsync.execution.transport import ResilientTransport
from kgsync.graph.chunking import stanza_blocks

STORE_URL = "https://graphdb.test"
REPOSITORY = "agentkg"


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark everything under tests/sync as integration, the rest as unit."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        markers = {mark.name for mark in item.iter_markers()}
        if markers.intersection({"unit", "integration"}):
            continue
        if test_path.parts[0] == "sync":
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Keep structlog configuration from leaking between tests."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Retry / Sleep Fixtures
# =============================================================================


class SleepRecorder:
    """Awaitable stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def policy() -> RetryPolicy:
    """Three attempts, no jitter, small deterministic delays."""
    return RetryPolicy(timeout=5.0, max_attempts=3, base_delay=0.5, max_delay=4.0, jitter=0.0)


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


# =============================================================================
# HTTP Fixtures
# =============================================================================


Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def make_transport(policy: RetryPolicy, sleeps: SleepRecorder):
    """Factory: ``make_transport(handler, policy=None)`` -> ResilientTransport."""

    def factory(handler: Handler, *, policy_override: RetryPolicy | None = None) -> ResilientTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return ResilientTransport(client, policy_override or policy, sleep=sleeps)

    return factory


class InMemoryGraphStore:
    """Minimal RDF4J-style repository: contexts of stanza blocks.

    Uploads are set-unions of stanza blocks per context, so re-uploading a
    chunk is a no-op.  ``fail_uploads`` holds HTTP statuses answered to the
    next uploads, in order, before normal service resumes.  With
    ``fail_from_upload`` set, that upload (1-based) and every later one
    gets a 503.

    SPARQL updates are understood only in the section-clear shape the
    client sends: the ingest records of one kind, the stanzas of the
    entities they record and the edge stanzas pointing at those entities
    through one of the listed predicates are dropped.
    """

    _WITH = re.compile(r"WITH <([^>]+)>")
    _KIND = re.compile(r'core:ingestEntityKind "([^"]+)"')
    _RECORDS = re.compile(r"core:recordsEntity <([^>]+)>")
    _EDGES = re.compile(r"VALUES \?p \{ ([^}]*) \}")

    def __init__(self, repository: str = REPOSITORY) -> None:
        self.repository = repository
        self.contexts: dict[str, set[str]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_uploads: list[int] = []
        self.fail_from_upload: int | None = None
        self.uploads_seen = 0
        self.updates: list[str] = []

    @property
    def statements_path(self) -> str:
        return f"/repositories/{self.repository}/statements"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path != self.statements_path:
            return httpx.Response(404, text="unknown repository")
        context = request.url.params.get("context", "").strip("<>")

        if request.method == "DELETE":
            self.contexts.pop(context, None)
            return httpx.Response(204)

        if request.method == "POST" and request.headers.get("content-type") == "text/turtle":
            self.uploads_seen += 1
            if self.fail_from_upload is not None and self.uploads_seen >= self.fail_from_upload:
                return httpx.Response(503, text="store unavailable")
            if self.fail_uploads:
                return httpx.Response(self.fail_uploads.pop(0), text="store unavailable")
            body = request.content.decode("utf-8")
            if not body.startswith("# kgsync-turtle/1"):
                return httpx.Response(400, text="MALFORMED DATA: missing header")
            self.contexts.setdefault(context, set()).update(stanza_blocks(body))
            return httpx.Response(204)

        if request.method == "POST" and request.headers.get("content-type") == "application/sparql-update":
            return self._clear_section(request.content.decode("utf-8"))

        return httpx.Response(405)

    def _clear_section(self, update: str) -> httpx.Response:
        self.updates.append(update)
        context, kind = self._WITH.search(update), self._KIND.search(update)
        if context is None or kind is None:
            return httpx.Response(400, text="MALFORMED QUERY")
        blocks = self.contexts.get(context.group(1), set())
        marker = f'core:ingestEntityKind "{kind.group(1)}"'
        records = {b for b in blocks if marker in b}
        entities = {iri for b in records for iri in self._RECORDS.findall(b)}
        edges = self._EDGES.search(update)
        predicates = edges.group(1).split() if edges else []
        doomed = set(records)
        for block in blocks:
            for iri in entities:
                if block.startswith(f"<{iri}> ") or (
                    f"<{iri}>" in block and any(p in block for p in predicates)
                ):
                    doomed.add(block)
        blocks -= doomed
        return httpx.Response(204)

    def snapshot(self) -> dict[str, frozenset[str]]:
        return {ctx: frozenset(blocks) for ctx, blocks in self.contexts.items()}

    def upload_requests(self) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == "POST" and r.headers.get("content-type") == "text/turtle"
        ]


@pytest.fixture
def memory_store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def store_transport(make_transport, memory_store: InMemoryGraphStore) -> ResilientTransport:
    return make_transport(lambda request: memory_store.handler(request))


# =============================================================================
# Domain Fixtures
# =============================================================================


@pytest.fixture
def resolver() -> IdentifierResolver:
    return IdentifierResolver(default_chain_id=295)


@pytest.fixture
def cursors() -> CursorStore:
    return CursorStore()


@pytest.fixture
def sqlite_cursors(tmp_path: Path) -> Iterator[CursorStore]:
    store = CursorStore.sqlite(tmp_path / "state" / "cursors.db")
    yield store
    store.close()
