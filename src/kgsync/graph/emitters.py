"""
Graph document emitters: upstream rows in, Turtle stanzas out.

Manifesto:
    An emitter is a pure function over a batch of rows.  For every row it
    either produces the complete set of stanzas for that record or nothing
    at all; the only side effect is a log line explaining a skip.

    - **Validate first:** Rows become pydantic records before any stanza is built
    - **Contained failures:** A missing field or an unresolvable identifier
      skips that row, never the batch
    - **Monotonic filter:** Rows at or below ``(after, after_id)`` are
      dropped even if the upstream query already bounded them
    - **Audit trail:** Every included row also yields an ingest-record
      stanza carrying the raw upstream payload

    Network lookups an emitter needs (account owners) happen beforehand in
    the async :meth:`Emitter.prepare`, so ``emit`` itself stays synchronous.

Architecture:
    ::

        rows ──▶ Emitter.emit(rows, after, after_id)
                   │
                   ├─ record_model.model_validate(row)   ── ValidationError ──▶ skip
                   ├─ (position, id) <= (after, after_id) ────────────────────▶ skip
                   ├─ stanzas_for(record, row)           ── InvalidIdentifier ─▶ skip
                   └─ document.extend(stanzas); track max (position, id)
                   │
                   ▼
               EmitResult(document, max_position, max_id, included, skipped)

Examples:
    >>> emitter = FeedbackEmitter(resolver, chain_id=11155111)
    >>> result = emitter.emit(rows, after=100)
    >>> result.max_position, result.included
    (103, 2)

Tags:
    rdf, turtle, emitter, pydantic, agents, feedback, kgsync
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from kgsync.core.errors import InvalidIdentifier, InvalidRecord
from kgsync.core.identifiers import (
    DEFAULT_ID_BASE,
    IdentifierResolver,
    account_iri,
    agent_descriptor_iri,
    feedback_iri,
    identity_descriptor_iri,
    identity_identifier_iri,
    identity_iri,
    ingest_record_iri,
    normalize_address,
    profile_iri,
    registry_iri,
)
from kgsync.core.logging import get_logger
from kgsync.core.watermarks import Position, cursor_key
from kgsync.graph.records import AgentRecord, EventAgent, FeedbackRecord
from kgsync.graph.turtle import (
    GraphDocument,
    Iri,
    RawLiteral,
    Stanza,
    StanzaBuilder,
    json_literal,
    turtle_iri_or_literal,
)

logger = get_logger(__name__)

R = TypeVar("R", bound=BaseModel)
E = TypeVar("E", bound=BaseModel)


class OwnerLookup(Protocol):
    """Resolves account addresses to the EOA that controls them."""

    async def owners_of(self, addresses: Iterable[str]) -> Mapping[str, str | None]:
        """Owner per lower-cased address; ``None`` when it cannot be told."""
        ...


@dataclass
class EmitResult:
    """Outcome of one :meth:`Emitter.emit` call.

    ``max_position`` and ``max_id`` are the ``(position, id)`` of the last
    included record in cursor order; ``max_id`` is None for records
    without an id.
    """

    document: GraphDocument
    max_position: Position | None = None
    max_id: str | None = None
    included: int = 0
    skipped: int = 0
    skip_reasons: Counter = field(default_factory=Counter)


def ingest_record_stanza(
    *,
    chain_id: int | str,
    kind: str,
    entity_id: str,
    cursor_value: Position,
    raw: Any,
    records_entity: Iri,
    source: str,
    tx_hash: str | None = None,
    block_number: int | None = None,
    timestamp: int | None = None,
    base: str = DEFAULT_ID_BASE,
) -> Stanza:
    """Audit stanza linking an emitted entity to the upstream row it came from."""
    return (
        StanzaBuilder(Iri(ingest_record_iri(chain_id, kind, entity_id, base=base)),
                      "core:IngestRecord", "prov:Entity")
        .add("core:ingestChainId", chain_id)
        .add("core:ingestSource", source)
        .add("core:ingestEntityKind", kind)
        .add("core:ingestEntityId", entity_id)
        .add("core:ingestCursorValue", str(cursor_value))
        .add("core:recordsEntity", records_entity)
        .add("core:rawJson", json_literal(raw))
        .add("core:txHash", tx_hash)
        .add("core:blockNumber", block_number if block_number and block_number > 0 else None)
        .add("core:timestamp", timestamp if timestamp and timestamp > 0 else None)
        .build()
    )


class Emitter(ABC, Generic[R]):
    """Base emitter: validation, monotonic filter and skip accounting.

    Subclasses set ``record_model`` and ``kind`` and implement
    :meth:`position` and :meth:`stanzas_for`.  ``section_reset`` marks
    streams that share their context with others: a reset then clears
    only this kind's records, entities and the ``section_edges`` pointing
    at them, instead of the whole context.
    """

    record_model: type[R]
    kind: str = "records"
    source: str = "upstream"
    section_reset: bool = False
    section_edges: tuple[str, ...] = ()

    def __init__(self, resolver: IdentifierResolver, *, chain_id: int | str) -> None:
        self.resolver = resolver
        self.chain_id = chain_id
        self.id_base = resolver.id_base

    @abstractmethod
    def position(self, record: R) -> Position:
        """Cursor key of *record*."""

    def row_id(self, record: R) -> str | None:
        """Tie-breaker among records sharing a position."""
        return getattr(record, "id", None)

    @abstractmethod
    def stanzas_for(self, record: R, raw: Mapping[str, Any]) -> list[Stanza]:
        """All stanzas for one record; raise to skip it."""

    async def prepare(self, rows: list[Mapping[str, Any]]) -> None:
        """Fetch whatever :meth:`stanzas_for` needs from the network."""

    def begin_batch(self) -> None:
        """Reset per-batch state before the first row."""

    def emit(
        self,
        rows: Iterable[Mapping[str, Any]],
        after: Position | None = None,
        after_id: str | None = None,
    ) -> EmitResult:
        self.begin_batch()
        result = EmitResult(document=GraphDocument())
        bound = cursor_key(after, after_id) if after is not None else None
        highest: tuple | None = None

        for row in rows:
            try:
                record = self.record_model.model_validate(row)
            except ValidationError as exc:
                self._skip(result, "invalid_record", row, errors=[e["loc"] for e in exc.errors()])
                continue

            pos, rid = self.position(record), self.row_id(record)
            key = cursor_key(pos, rid)
            if bound is not None and key <= bound:
                self._skip(result, "at_or_below_cursor", row, position=pos, cursor=after)
                continue

            try:
                stanzas = self.stanzas_for(record, row)
            except (InvalidIdentifier, InvalidRecord) as exc:
                self._skip(result, type(exc).__name__, row, error=exc.message)
                continue

            result.document.extend(stanzas)
            result.included += 1
            if highest is None or key > highest:
                highest = key
                result.max_position, result.max_id = pos, rid

        logger.debug(
            "batch_emitted",
            kind=self.kind,
            included=result.included,
            skipped=result.skipped,
            stanzas=len(result.document),
            max_position=result.max_position,
        )
        return result

    def _skip(self, result: EmitResult, reason: str, row: Any, **fields: Any) -> None:
        result.skipped += 1
        result.skip_reasons[reason] += 1
        entity = row.get("id") or row.get("agentId") if isinstance(row, Mapping) else None
        logger.info("record_skipped", kind=self.kind, reason=reason, entity=entity, **fields)


# =============================================================================
# AGENTS (query API)
# =============================================================================


class AgentEmitter(Emitter[AgentRecord]):
    """Registry-published agents keyed by their UAID.

    Per row: agent, profile, agent descriptor, identity, identity identifier,
    identity descriptor and ingest-record stanzas.  The registry node is
    emitted once per batch, before the first agent that references it.
    Rows sharing an update time are ordered by UAID.
    """

    record_model = AgentRecord
    kind = "agents"
    source = "query-api"

    def __init__(
        self,
        resolver: IdentifierResolver,
        *,
        chain_id: int | str,
        default_registry: str = "default",
    ) -> None:
        super().__init__(resolver, chain_id=chain_id)
        self.default_registry = default_registry
        self._emitted_registries: set[str] = set()

    def begin_batch(self) -> None:
        self._emitted_registries = set()

    def position(self, record: AgentRecord) -> int:
        return record.position

    def row_id(self, record: AgentRecord) -> str:
        return record.agent_address

    def stanzas_for(self, record: AgentRecord, raw: Mapping[str, Any]) -> list[Stanza]:
        ident = self.resolver.resolve(record.agent_address)
        base = self.id_base
        key = ident.key

        agent = Iri(self.resolver.node_name(ident))
        profile = Iri(profile_iri(key, base=base))
        agent_desc = Iri(agent_descriptor_iri(key, base=base))
        identity = Iri(identity_iri(key, base=base))
        identifier = Iri(identity_identifier_iri(key, base=base))
        identity_desc = Iri(identity_descriptor_iri(key, base=base))

        label = ident.param("registry") or record.agent_owner or self.default_registry
        registry = Iri(registry_iri(label, base=base))
        title = record.agent_name or f"Agent {record.agent_id}"
        image = turtle_iri_or_literal(record.image)
        raw_json = RawLiteral(record.raw_json) if record.raw_json else None

        stanzas: list[Stanza] = []
        if registry.value not in self._emitted_registries:
            stanzas.append(
                StanzaBuilder(registry, "core:AgentRegistry", "prov:Entity")
                .add("rdfs:label", label)
                .add("core:registryChainId", self.chain_id)
                .build()
            )

        stanzas.append(
            StanzaBuilder(agent, "core:AIAgent", "prov:SoftwareAgent", "prov:Agent", "prov:Entity")
            .add("core:uaid", ident.raw)
            .add("core:agentId", record.agent_id)
            .add("core:hasIdentity", identity)
            .add("core:hasDescriptor", agent_desc)
            .add("core:json", raw_json)
            .build()
        )
        stanzas.append(
            StanzaBuilder(profile, "core:AgentProfile", "prov:Entity")
            .add("core:uaid", ident.raw)
            .add("core:originalId", ident.did or ident.method_specific)
            .add("core:registry", label)
            .add("core:routeParams", ident.route_raw)
            .build()
        )
        stanzas.append(
            StanzaBuilder(agent_desc, "core:AgentDescriptor", "prov:Entity")
            .add("dcterms:title", title)
            .add("dcterms:description", record.description)
            .add("schema:image", image)
            .add("core:tokenUri", turtle_iri_or_literal(record.token_uri))
            .build()
        )
        stanzas.append(
            StanzaBuilder(identity, "core:AgentIdentity", "prov:Entity")
            .add("core:hasIdentifier", identifier)
            .add("core:hasDescriptor", identity_desc)
            .add("core:identityRegistry", registry)
            .add("core:hasAgentProfile", profile)
            .build()
        )
        stanzas.append(
            StanzaBuilder(identifier, "core:UniversalIdentifier", "core:Identifier", "prov:Entity")
            .add("core:protocolIdentifier", ident.protocol_identifier)
            .build()
        )
        stanzas.append(
            StanzaBuilder(identity_desc, "core:AgentIdentityDescriptor", "prov:Entity")
            .add("dcterms:title", title)
            .add("dcterms:description", record.description)
            .add("schema:image", image)
            .add("core:json", raw_json)
            .build()
        )
        # Keyed like the agent node: the bare agent id repeats across chains.
        stanzas.append(
            ingest_record_stanza(
                chain_id=self.chain_id,
                kind=self.kind,
                entity_id=ident.protocol_identifier,
                cursor_value=record.position,
                raw=dict(raw),
                records_entity=agent,
                source=self.source,
                block_number=record.created_at_block,
                timestamp=record.updated_at_time,
                base=base,
            )
        )

        self._emitted_registries.add(registry.value)
        return stanzas


# =============================================================================
# CHAIN EVENTS (event index)
# =============================================================================


class ChainEventEmitter(Emitter[E]):
    """Events of one chain's index, each minted as one node plus its edges.

    Subclasses build the event's own stanzas in :meth:`entity_stanzas` and
    name the accounts it touches in :meth:`accounts`.  With an
    :class:`OwnerLookup`, every such account is typed once per batch:
    ``eth:EOAAccount`` when it controls itself, ``eth:SmartAccount`` with
    an ``eth:hasEOAOwner`` edge when another key controls it.
    """

    source = "subgraph"
    section_reset = True

    def __init__(
        self,
        resolver: IdentifierResolver,
        *,
        chain_id: int | str,
        owners: OwnerLookup | None = None,
    ) -> None:
        super().__init__(resolver, chain_id=chain_id)
        self.owners = owners
        self._owners: dict[str, str | None] = {}
        self._typed_accounts: set[str] = set()

    @abstractmethod
    def node_iri(self, record: E) -> str: ...

    @abstractmethod
    def entity_stanzas(self, record: E, node: Iri) -> list[Stanza]: ...

    def accounts(self, record: E) -> list[str]:
        """Lower-cased addresses of the accounts *record* links to."""
        return []

    def position(self, record: E) -> int:
        return record.position

    def ingest_fields(self, record: E) -> dict[str, Any]:
        return {
            "tx_hash": getattr(record, "tx_hash", None),
            "block_number": getattr(record, "block_number", None),
            "timestamp": getattr(record, "timestamp", None),
        }

    async def prepare(self, rows: list[Mapping[str, Any]]) -> None:
        self._owners = {}
        if self.owners is None:
            return
        addresses: list[str] = []
        for row in rows:
            try:
                addresses.extend(self.accounts(self.record_model.model_validate(row)))
            except ValidationError:
                continue
        if addresses:
            self._owners = dict(await self.owners.owners_of(list(dict.fromkeys(addresses))))

    def begin_batch(self) -> None:
        self._typed_accounts = set()

    def account_node(self, address: str) -> Iri:
        return Iri(account_iri(int(self.chain_id), address, base=self.id_base))

    def agent_node(self, agent: EventAgent) -> Iri:
        """Wallet account of *agent* when known, else its chain-scoped node."""
        wallet = normalize_address(agent.agent_wallet)
        if wallet is not None:
            return self.account_node(wallet)
        uaid = f"uaid:did:{self.resolver.registry_method}:{self.chain_id}:{agent.id}"
        return Iri(self.resolver.node_name(self.resolver.resolve(uaid)))

    def _account_stanzas(self, address: str) -> list[Stanza]:
        owner = self._owners.get(address)
        if owner is None:
            return []
        if owner == address:
            return [self._eoa_stanza(address)]
        smart = (
            StanzaBuilder(self.account_node(address), "eth:Account", "eth:SmartAccount")
            .add("eth:accountChainId", int(self.chain_id))
            .add("eth:accountAddress", address)
            .add("eth:hasEOAOwner", self.account_node(owner))
            .build()
        )
        return [smart, self._eoa_stanza(owner)]

    def _eoa_stanza(self, address: str) -> Stanza:
        return (
            StanzaBuilder(self.account_node(address), "eth:Account", "eth:EOAAccount")
            .add("eth:accountChainId", int(self.chain_id))
            .add("eth:accountAddress", address)
            .build()
        )

    def stanzas_for(self, record: E, raw: Mapping[str, Any]) -> list[Stanza]:
        node = Iri(self.node_iri(record))
        stanzas = self.entity_stanzas(record, node)
        fresh = [a for a in dict.fromkeys(self.accounts(record)) if a not in self._typed_accounts]
        for address in fresh:
            stanzas.extend(self._account_stanzas(address))
        stanzas.append(
            ingest_record_stanza(
                chain_id=self.chain_id,
                kind=self.kind,
                entity_id=record.id,
                cursor_value=self.position(record),
                raw=dict(raw),
                records_entity=node,
                source=self.source,
                base=self.id_base,
                **self.ingest_fields(record),
            )
        )
        self._typed_accounts.update(fresh)
        return stanzas


class FeedbackEmitter(ChainEventEmitter[FeedbackRecord]):
    """Chain-scoped reputation feedback keyed by ``(chain, agent, client, index)``.

    The agent side of the ``core:hasReputationAssertion`` edge is the
    agent's wallet account when the event carries a valid wallet address,
    otherwise the chain-scoped agent node.
    """

    record_model = FeedbackRecord
    kind = "feedbacks"
    section_edges = ("core:hasReputationAssertion",)

    def node_iri(self, record: FeedbackRecord) -> str:
        return feedback_iri(
            int(self.chain_id),
            record.agent.id,
            record.client_address,
            record.feedback_index,
            base=self.id_base,
        )

    def accounts(self, record: FeedbackRecord) -> list[str]:
        wallet = normalize_address(record.agent.agent_wallet)
        return [wallet] if wallet else []

    def entity_stanzas(self, record: FeedbackRecord, node: Iri) -> list[Stanza]:
        return [
            StanzaBuilder(node, "erc8004:Feedback", "prov:Entity")
            .add("core:agentId", record.agent.id)
            .add("erc8004:clientAddress", record.client_address.lower())
            .add("erc8004:feedbackIndex", record.feedback_index)
            .add("erc8004:score", record.score)
            .add("core:json", RawLiteral(record.feedback_json) if record.feedback_json else None)
            .build(),
            Stanza(self.agent_node(record.agent), properties=(("core:hasReputationAssertion", node),)),
        ]


__all__ = [
    "EmitResult",
    "Emitter",
    "AgentEmitter",
    "ChainEventEmitter",
    "FeedbackEmitter",
    "OwnerLookup",
    "ingest_record_stanza",
]
