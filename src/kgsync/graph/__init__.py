"""kgsync graph -- Turtle model, record schemas, emitters and chunking."""

from kgsync.graph.chunking import DEFAULT_CHUNK_BYTES, split_document, split_turtle
from kgsync.graph.emitters import (
    AgentEmitter,
    ChainEventEmitter,
    EmitResult,
    Emitter,
    FeedbackEmitter,
    OwnerLookup,
)
from kgsync.graph.events import (
    AssociationEmitter,
    AssociationRevocationEmitter,
    FeedbackResponseEmitter,
    FeedbackRevocationEmitter,
    ValidationRequestEmitter,
    ValidationResponseEmitter,
)
from kgsync.graph.records import AgentRecord, FeedbackRecord
from kgsync.graph.turtle import (
    HEADER_VERSION,
    GraphDocument,
    Iri,
    RawLiteral,
    Stanza,
    StanzaBuilder,
    escape_turtle_string,
)

__all__ = [
    "DEFAULT_CHUNK_BYTES",
    "HEADER_VERSION",
    "AgentEmitter",
    "AgentRecord",
    "AssociationEmitter",
    "AssociationRevocationEmitter",
    "ChainEventEmitter",
    "EmitResult",
    "Emitter",
    "FeedbackEmitter",
    "FeedbackRecord",
    "FeedbackResponseEmitter",
    "FeedbackRevocationEmitter",
    "GraphDocument",
    "Iri",
    "OwnerLookup",
    "RawLiteral",
    "Stanza",
    "StanzaBuilder",
    "ValidationRequestEmitter",
    "ValidationResponseEmitter",
    "escape_turtle_string",
    "split_document",
    "split_turtle",
]
