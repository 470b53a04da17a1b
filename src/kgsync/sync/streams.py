"""Stream wiring and concurrent execution.

Each stream is one :class:`IncrementalSyncLoop`.  Streams share the
transport (read-only configuration plus an optional token bucket) and
nothing else; :func:`run_streams` runs them as independent asyncio tasks so
one stream's failure never cancels another.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from kgsync.core.identifiers import IdentifierResolver, chain_context
from kgsync.core.logging import get_logger
from kgsync.core.watermarks import CursorStore
from kgsync.graph.emitters import AgentEmitter, ChainEventEmitter, FeedbackEmitter, OwnerLookup
from kgsync.graph.events import (
    AssociationEmitter,
    AssociationRevocationEmitter,
    FeedbackResponseEmitter,
    FeedbackRevocationEmitter,
    ValidationRequestEmitter,
    ValidationResponseEmitter,
)
from kgsync.sources import subgraph
from kgsync.sources.query_api import AgentRowSource, QueryApiClient
from kgsync.sources.subgraph import SubgraphClient, SubgraphEventSource
from kgsync.store.publisher import StorePublisher
from kgsync.sync.loop import CycleReport, IncrementalSyncLoop

logger = get_logger(__name__)


@dataclass(frozen=True)
class EventStreamSpec:
    """Where one event kind lives in the index and how it is emitted."""

    collection: str
    fields: str
    emitter: type[ChainEventEmitter]
    cursor_field: str = "blockNumber"


# Stream kind -> index collection.  Every kind of one chain shares that
# chain's context; resets clear only the kind's own section.
EVENT_STREAMS: dict[str, EventStreamSpec] = {
    "feedbacks": EventStreamSpec("feedbacks", subgraph.FEEDBACK_FIELDS, FeedbackEmitter),
    "feedback-revocations": EventStreamSpec(
        "repFeedbackRevokeds", subgraph.FEEDBACK_REVOCATION_FIELDS, FeedbackRevocationEmitter
    ),
    "feedback-responses": EventStreamSpec(
        "repResponseAppendeds", subgraph.FEEDBACK_RESPONSE_FIELDS, FeedbackResponseEmitter
    ),
    "validation-requests": EventStreamSpec(
        "validationRequests", subgraph.VALIDATION_REQUEST_FIELDS, ValidationRequestEmitter
    ),
    "validation-responses": EventStreamSpec(
        "validationResponses", subgraph.VALIDATION_RESPONSE_FIELDS, ValidationResponseEmitter
    ),
    "associations": EventStreamSpec(
        "associations",
        subgraph.ASSOCIATION_FIELDS,
        AssociationEmitter,
        cursor_field="lastUpdatedBlockNumber",
    ),
    "association-revocations": EventStreamSpec(
        "associationRevocations",
        subgraph.ASSOCIATION_REVOCATION_FIELDS,
        AssociationRevocationEmitter,
    ),
}


def agent_stream(
    client: QueryApiClient,
    resolver: IdentifierResolver,
    publisher: StorePublisher,
    cursors: CursorStore,
    *,
    chain_id: int,
    graph_base: str,
    page_size: int = 500,
) -> IncrementalSyncLoop:
    """Registry agents from the query API into the registry chain's context."""
    return IncrementalSyncLoop(
        f"agents:{chain_id}",
        AgentRowSource(client),
        AgentEmitter(resolver, chain_id=chain_id),
        publisher,
        cursors,
        context=chain_context(chain_id, base=graph_base),
        page_size=page_size,
    )


def feedback_stream(
    client: SubgraphClient,
    resolver: IdentifierResolver,
    publisher: StorePublisher,
    cursors: CursorStore,
    *,
    chain_id: int,
    graph_base: str,
    page_size: int = 500,
    owners: OwnerLookup | None = None,
) -> IncrementalSyncLoop:
    """Reputation feedback events from one chain's event index."""
    return event_stream(
        "feedbacks",
        client,
        resolver,
        publisher,
        cursors,
        chain_id=chain_id,
        graph_base=graph_base,
        page_size=page_size,
        owners=owners,
    )


def event_stream(
    kind: str,
    client: SubgraphClient,
    resolver: IdentifierResolver,
    publisher: StorePublisher,
    cursors: CursorStore,
    *,
    chain_id: int,
    graph_base: str,
    page_size: int = 500,
    owners: OwnerLookup | None = None,
) -> IncrementalSyncLoop:
    """One event kind of *chain_id*, published into that chain's context.

    Raises:
        KeyError: *kind* is not in :data:`EVENT_STREAMS`.
    """
    spec = EVENT_STREAMS[kind]
    return IncrementalSyncLoop(
        f"{kind}:{chain_id}",
        SubgraphEventSource(
            client,
            collection=spec.collection,
            fields=spec.fields,
            cursor_field=spec.cursor_field,
            name=kind,
        ),
        spec.emitter(resolver, chain_id=chain_id, owners=owners),
        publisher,
        cursors,
        context=chain_context(chain_id, base=graph_base),
        page_size=page_size,
    )


@dataclass
class StreamOutcome:
    """Per-stream result of :func:`run_streams`."""

    stream: str
    reports: list[CycleReport] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def _run_one(loop: IncrementalSyncLoop, *, reset: bool, drain: bool) -> StreamOutcome:
    outcome = StreamOutcome(stream=loop.name)
    if drain:
        outcome.reports = await loop.drain(reset=reset)
    else:
        outcome.reports = [await loop.run_cycle(reset=reset)]
    return outcome


async def run_streams(
    loops: list[IncrementalSyncLoop],
    *,
    reset: bool = False,
    drain: bool = True,
) -> list[StreamOutcome]:
    """Run every stream concurrently; collect an outcome per stream.

    A failing stream is logged and reported, the others keep running.
    """
    names = [loop.name for loop in loops]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate stream names: {names}")

    results = await asyncio.gather(
        *(_run_one(loop, reset=reset, drain=drain) for loop in loops),
        return_exceptions=True,
    )

    outcomes: list[StreamOutcome] = []
    for loop, result in zip(loops, results):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            outcomes.append(StreamOutcome(stream=loop.name, error=result))
        else:
            outcomes.append(result)

    logger.info(
        "streams_completed",
        streams=len(outcomes),
        failed=[o.stream for o in outcomes if not o.ok],
    )
    return outcomes


__all__ = [
    "EVENT_STREAMS",
    "EventStreamSpec",
    "StreamOutcome",
    "agent_stream",
    "event_stream",
    "feedback_stream",
    "run_streams",
]
