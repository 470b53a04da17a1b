"""Integration tests for stream wiring and concurrent stream execution."""

from __future__ import annotations

import httpx
import pytest

from kgsync.core.errors import TransportError
from kgsync.core.identifiers import chain_context
from kgsync.graph.emitters import AgentEmitter, FeedbackEmitter
from kgsync.graph.events import AssociationEmitter
from kgsync.sources.query_api import AgentRowSource, QueryApiClient
from kgsync.sources.subgraph import ASSOCIATION_FIELDS, SubgraphClient, SubgraphEventSource
from kgsync.store.graphdb import GraphStoreClient
from kgsync.store.publisher import StorePublisher
from kgsync.sync.streams import (
    EVENT_STREAMS,
    StreamOutcome,
    agent_stream,
    event_stream,
    feedback_stream,
    run_streams,
)

STORE_URL = "https://graphdb.test"
GRAPH_BASE = "https://kg.test/graph/data"
CLIENT = "0xC1C1C1C1C1C1C1C1C1C1C1C1C1C1C1C1C1C1C1C1"


def feedback_event(block: int, index: int = 1) -> dict:
    return {
        "id": f"0xtx{block}-{index}",
        "agent": {"id": "42", "agentWallet": None},
        "clientAddress": CLIENT,
        "feedbackIndex": str(index),
        "blockNumber": str(block),
        "txHash": f"0xtx{block}",
        "timestamp": "1700000000",
        "score": 80,
    }


@pytest.fixture
def routed(make_transport, memory_store):
    """One transport for the store and two event indexes (one healthy, one down)."""

    def handler(request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "graphdb.test":
            return memory_store.handler(request)
        if host == "index-up.test":
            return httpx.Response(200, json={"data": {"feedbacks": [feedback_event(7, 1), feedback_event(8, 2)]}})
        return httpx.Response(403, text="forbidden")

    return make_transport(handler)


@pytest.fixture
def publisher(routed, memory_store):
    return StorePublisher(GraphStoreClient(routed, STORE_URL, memory_store.repository))


class TestStreamFactories:
    def test_agent_stream(self, routed, resolver, publisher, cursors):
        client = QueryApiClient(routed, "https://query.test/query")
        loop = agent_stream(client, resolver, publisher, cursors, chain_id=295, graph_base=GRAPH_BASE)
        assert loop.name == "agents:295"
        assert loop.context == chain_context(295, base=GRAPH_BASE)
        assert isinstance(loop.source, AgentRowSource)
        assert isinstance(loop.emitter, AgentEmitter)
        assert loop.emitter.chain_id == 295

    def test_feedback_stream(self, routed, resolver, publisher, cursors):
        client = SubgraphClient(routed, "https://index-up.test/graphql")
        loop = feedback_stream(
            client, resolver, publisher, cursors, chain_id=11155111, graph_base=GRAPH_BASE, page_size=25
        )
        assert loop.name == "feedbacks:11155111"
        assert loop.context == f"{GRAPH_BASE}/subgraph/11155111"
        assert isinstance(loop.source, SubgraphEventSource)
        assert loop.source.collection == "feedbacks"
        assert isinstance(loop.emitter, FeedbackEmitter)
        assert loop.page_size == 25

    def test_event_stream(self, routed, resolver, publisher, cursors):
        client = SubgraphClient(routed, "https://index-up.test/graphql")
        owners = object()
        loop = event_stream(
            "associations", client, resolver, publisher, cursors,
            chain_id=11155111, graph_base=GRAPH_BASE, owners=owners,
        )
        assert loop.name == "associations:11155111"
        assert loop.context == f"{GRAPH_BASE}/subgraph/11155111"
        assert loop.source.collection == "associations"
        assert loop.source.cursor_field == "lastUpdatedBlockNumber"
        assert loop.source.fields is ASSOCIATION_FIELDS
        assert isinstance(loop.emitter, AssociationEmitter)
        assert loop.emitter.owners is owners

    def test_every_event_kind_names_its_emitter(self):
        for kind, spec in EVENT_STREAMS.items():
            assert spec.emitter.kind == kind
            assert spec.emitter.section_reset

    def test_unknown_event_kind(self, routed, resolver, publisher, cursors):
        client = SubgraphClient(routed, "https://index-up.test/graphql")
        with pytest.raises(KeyError):
            event_stream(
                "transfers", client, resolver, publisher, cursors, chain_id=1, graph_base=GRAPH_BASE
            )


class TestRunStreams:
    @pytest.fixture
    def loops(self, routed, resolver, publisher, cursors):
        healthy = feedback_stream(
            SubgraphClient(routed, "https://index-up.test/graphql"),
            resolver, publisher, cursors, chain_id=1, graph_base=GRAPH_BASE,
        )
        broken = feedback_stream(
            SubgraphClient(routed, "https://index-down.test/graphql"),
            resolver, publisher, cursors, chain_id=2, graph_base=GRAPH_BASE,
        )
        return [healthy, broken]

    @pytest.mark.asyncio
    async def test_failing_stream_does_not_stop_others(self, loops, cursors, memory_store):
        outcomes = await run_streams(loops)

        assert [o.stream for o in outcomes] == ["feedbacks:1", "feedbacks:2"]
        assert outcomes[0].ok
        assert outcomes[0].reports[0].cursor_after == 8
        assert not outcomes[1].ok
        assert isinstance(outcomes[1].error, TransportError)
        assert cursors.read_cursor("feedbacks:1") == 8
        assert cursors.read_cursor("feedbacks:2") is None
        assert chain_context(1, base=GRAPH_BASE) in memory_store.contexts
        assert chain_context(2, base=GRAPH_BASE) not in memory_store.contexts

    @pytest.mark.asyncio
    async def test_single_cycle_mode(self, loops):
        outcomes = await run_streams(loops[:1], drain=False)
        assert len(outcomes[0].reports) == 1

    @pytest.mark.asyncio
    async def test_duplicate_names_rejected(self, loops):
        with pytest.raises(ValueError, match="Duplicate"):
            await run_streams([loops[0], loops[0]])

    def test_outcome_ok(self):
        assert StreamOutcome("s").ok
        assert not StreamOutcome("s", error=RuntimeError("x")).ok
