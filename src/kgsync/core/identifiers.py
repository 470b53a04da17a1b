"""
Canonical identifier resolution and node-name (IRI) minting.

Upstream records name agents with universal agent identifiers (UAIDs):
``uaid:`` followed either by ``aid:<primary>`` or by a decentralized
identifier (``did:<method>:...``), optionally followed by ``;key=value``
routing parameters.  This module parses those strings into an immutable
:class:`CanonicalIdentifier` and mints exactly one stable node IRI per
logical identifier.

Manifesto:
    Upserts in the triple store replace by subject, so re-running a batch
    is only safe if the same logical identifier always yields the same
    node name.  Resolution is therefore pure: no I/O, no clock, no
    randomness, and every producer of a node name goes through
    :func:`iri_encode_segment`.

    - **Strict chain ids:** A missing or non-numeric chain id is an
      ``InvalidIdentifier``, never silently defaulted
    - **Route params are metadata:** They never contribute to node names
    - **One encoder:** ``quote(v, safe="")`` then ``%`` → ``_``

Architecture:
    ::

        "uaid:did:8004:11155111:42;registry=erc-8004;proto=a2a"
              │
              ▼
        ┌────────────────────┐   head  = "did:8004:11155111:42"
        │ IdentifierResolver │   route = {"registry": "erc-8004",
        └────────────────────┘            "proto": "a2a"}
              │
              ▼
        CanonicalIdentifier(kind=CHAIN_SCOPED_AGENT, chain_id=11155111,
                            agent_id=42, ...)
              │  node_name()
              ▼
        https://www.agentictrust.io/id/agent/11155111/42

Examples:
    >>> resolver = IdentifierResolver(default_chain_id=295)
    >>> ident = resolver.resolve("uaid:aid:alpha;registry=HOL")
    >>> ident.kind
    <IdentifierKind.UNIVERSAL_AGENT_ID: 'universal_agent_id'>
    >>> ident.param("registry")
    'HOL'
    >>> iri_encode_segment("did:ethr:1:0xab")
    'did_3Aethr_3A1_3A0xab'

Tags:
    identifiers, uaid, did, iri, node-name, kgsync
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote

from kgsync.core.errors import InvalidIdentifier

UAID_PREFIX = "uaid:"
DEFAULT_ID_BASE = "https://www.agentictrust.io/id"
DEFAULT_GRAPH_BASE = "https://www.agentictrust.io/graph/data"

_HEX_ADDRESS = re.compile(r"0x[0-9a-fA-F]{40}")
_DIGITS = re.compile(r"[0-9]+")


# =============================================================================
# ENCODING
# =============================================================================


def iri_encode_segment(value: object) -> str:
    """Percent-encode *value* as one path segment, then replace ``%`` with ``_``.

    Only RFC 3986 unreserved characters survive unencoded, so the result is
    safe as a bare IRI path segment, a filename or a log token.
    """
    return quote(str(value), safe="").replace("%", "_")


def iri_encode_path(value: object) -> str:
    """Encode each non-empty ``/``-separated segment of *value*."""
    return "/".join(iri_encode_segment(s) for s in str(value).split("/") if s)


def is_hex_address(value: object) -> bool:
    return isinstance(value, str) and bool(_HEX_ADDRESS.fullmatch(value.strip()))


def normalize_address(value: object) -> str | None:
    """Return the lower-cased ``0x`` address in *value*, or ``None``.

    Accepts bare addresses and colon-qualified account ids
    (``eip155:1:0xAB...``), taking the last segment.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    last = value.strip().rsplit(":", 1)[-1].strip().lower()
    return last if _HEX_ADDRESS.fullmatch(last) else None


def parse_route_params(route_raw: str | None) -> tuple[tuple[str, str], ...]:
    """Parse ``k=v;k2=v2`` into ordered pairs; the first occurrence of a key wins.

    Segments without ``=``, with an empty key or with an empty value are
    skipped.
    """
    if not route_raw or not route_raw.strip():
        return ()
    seen: dict[str, str] = {}
    for segment in route_raw.split(";"):
        seg = segment.strip()
        key, sep, val = seg.partition("=")
        key, val = key.strip(), val.strip()
        if not sep or not key or not val:
            continue
        seen.setdefault(key, val)
    return tuple(seen.items())


# =============================================================================
# CANONICAL IDENTIFIER
# =============================================================================


class IdentifierKind(str, Enum):
    """Discriminator of :class:`CanonicalIdentifier`."""

    CHAIN_SCOPED_AGENT = "chain_scoped_agent"        # did:8004:<chain>:<agentId>
    DECENTRALIZED_ACCOUNT = "decentralized_account"  # did:ethr:<chain>:<0x address>
    UNIVERSAL_AGENT_ID = "universal_agent_id"        # aid:<primary>
    OPAQUE = "opaque"                                # anything else well-formed


@dataclass(frozen=True, slots=True)
class CanonicalIdentifier:
    """Parsed, validated form of an upstream identifier string.

    Attributes:
        kind: Which scheme the identifier resolved to.
        raw: The input string, stripped.
        method_specific: Scheme-specific body. Primary id for ``aid:``,
            ``<chain>:<agentId>`` / ``<chain>:<address>`` for the two
            chain-bound DID methods, the full DID or head for opaque ones.
        method: DID method or ``"aid"``; ``None`` for opaque non-DID heads.
        chain_id: Numeric chain id, if the scheme carries or implies one.
        agent_id: Numeric agent id for chain-scoped agents.
        route_params: Ordered ``(key, value)`` routing parameters.
        route_raw: Unparsed text after the first ``;``.
    """

    kind: IdentifierKind
    raw: str
    method_specific: str
    method: str | None = None
    chain_id: int | None = None
    agent_id: int | None = None
    route_params: tuple[tuple[str, str], ...] = ()
    route_raw: str | None = None

    @property
    def did(self) -> str | None:
        """Canonical DID string, or ``None`` for non-DID identifiers."""
        if self.method is None or self.method == "aid":
            return None
        if self.kind is IdentifierKind.OPAQUE:
            return self.method_specific
        return f"did:{self.method}:{self.method_specific}"

    @property
    def address(self) -> str | None:
        """Lower-cased account address for account-bound identifiers."""
        if self.kind is not IdentifierKind.DECENTRALIZED_ACCOUNT:
            return None
        return self.method_specific.rsplit(":", 1)[-1]

    @property
    def protocol_identifier(self) -> str:
        """Identifier as published on the identity node (``aid:x`` or the DID)."""
        if self.kind is IdentifierKind.UNIVERSAL_AGENT_ID:
            return f"aid:{self.method_specific}"
        return self.did or self.method_specific

    @property
    def key(self) -> str:
        """Unique key the node name is minted from."""
        if self.kind is IdentifierKind.CHAIN_SCOPED_AGENT:
            return f"{self.chain_id}/{self.agent_id}"
        if self.kind is IdentifierKind.DECENTRALIZED_ACCOUNT:
            return self.did or self.method_specific
        return self.method_specific

    def param(self, key: str, default: str | None = None) -> str | None:
        for k, v in self.route_params:
            if k == key:
                return v
        return default


# =============================================================================
# RESOLVER
# =============================================================================


class IdentifierResolver:
    """Parse UAID strings and mint node IRIs.

    Args:
        default_chain_id: Chain id paired with ``aid:`` identifiers.
            ``None`` makes every ``aid:`` identifier invalid.
        registry_method: DID method of chain-scoped numeric agents.
        eth_method: DID method of account-bound identifiers.
        id_base: Base of every minted node IRI.
    """

    def __init__(
        self,
        default_chain_id: int | None = None,
        *,
        registry_method: str = "8004",
        eth_method: str = "ethr",
        id_base: str = DEFAULT_ID_BASE,
    ) -> None:
        self.default_chain_id = default_chain_id
        self.registry_method = registry_method
        self.eth_method = eth_method
        self.id_base = id_base.rstrip("/")

    def resolve(self, value: object) -> CanonicalIdentifier:
        """Resolve *value* into a :class:`CanonicalIdentifier`.

        Raises:
            InvalidIdentifier: On a missing ``uaid:`` prefix, a malformed
                DID, a missing or non-numeric chain id, or an ``aid:``
                identifier without a configured default chain id.
        """
        if not isinstance(value, str):
            raise InvalidIdentifier("Identifier must be a string", value=repr(value))
        raw = value.strip()
        if not raw.startswith(UAID_PREFIX):
            raise InvalidIdentifier(f"Missing {UAID_PREFIX!r} prefix: {raw!r}", value=raw)

        head, _, route = raw[len(UAID_PREFIX):].partition(";")
        head = head.strip()
        route_raw = route.strip() or None
        params = parse_route_params(route_raw)

        if head.startswith("aid:"):
            primary = head[len("aid:"):].strip()
            if not primary:
                raise InvalidIdentifier(f"Empty aid primary id: {raw!r}", value=raw)
            if self.default_chain_id is None:
                raise InvalidIdentifier(
                    f"No default chain id configured for {raw!r}", value=raw
                )
            return CanonicalIdentifier(
                kind=IdentifierKind.UNIVERSAL_AGENT_ID,
                raw=raw,
                method_specific=primary,
                method="aid",
                chain_id=self.default_chain_id,
                route_params=params,
                route_raw=route_raw,
            )

        if head.startswith("did:"):
            return self._resolve_did(head, raw, params, route_raw)

        if not head:
            raise InvalidIdentifier(f"Empty identifier: {raw!r}", value=raw)
        return CanonicalIdentifier(
            kind=IdentifierKind.OPAQUE,
            raw=raw,
            method_specific=head,
            route_params=params,
            route_raw=route_raw,
        )

    def _resolve_did(
        self,
        did: str,
        raw: str,
        params: tuple[tuple[str, str], ...],
        route_raw: str | None,
    ) -> CanonicalIdentifier:
        parts = did.split(":")
        if len(parts) < 3 or not parts[1] or not all(parts[2:]):
            raise InvalidIdentifier(f"Malformed DID: {did!r}", value=raw)
        method = parts[1]

        if method == self.registry_method:
            if len(parts) != 4:
                raise InvalidIdentifier(
                    f"Expected did:{method}:<chainId>:<agentId>, got {did!r}", value=raw
                )
            chain_id = _parse_chain_id(parts[2], raw)
            if not _DIGITS.fullmatch(parts[3]):
                raise InvalidIdentifier(f"Agent id is not numeric: {did!r}", value=raw)
            agent_id = int(parts[3])
            return CanonicalIdentifier(
                kind=IdentifierKind.CHAIN_SCOPED_AGENT,
                raw=raw,
                method_specific=f"{chain_id}:{agent_id}",
                method=method,
                chain_id=chain_id,
                agent_id=agent_id,
                route_params=params,
                route_raw=route_raw,
            )

        if method == self.eth_method:
            if len(parts) == 3:
                raise InvalidIdentifier(
                    f"Account identifier without chain id: {did!r}", value=raw
                )
            if len(parts) != 4:
                raise InvalidIdentifier(
                    f"Expected did:{method}:<chainId>:<address>, got {did!r}", value=raw
                )
            chain_id = _parse_chain_id(parts[2], raw)
            if not _HEX_ADDRESS.fullmatch(parts[3]):
                raise InvalidIdentifier(f"Malformed account address: {did!r}", value=raw)
            return CanonicalIdentifier(
                kind=IdentifierKind.DECENTRALIZED_ACCOUNT,
                raw=raw,
                method_specific=f"{chain_id}:{parts[3].lower()}",
                method=method,
                chain_id=chain_id,
                route_params=params,
                route_raw=route_raw,
            )

        return CanonicalIdentifier(
            kind=IdentifierKind.OPAQUE,
            raw=raw,
            method_specific=did,
            method=method,
            route_params=params,
            route_raw=route_raw,
        )

    # -- node names ----------------------------------------------------------

    def node_name(self, ident: CanonicalIdentifier) -> str:
        """Mint the agent node IRI for *ident* (without angle brackets)."""
        if ident.kind is IdentifierKind.CHAIN_SCOPED_AGENT:
            return agent_iri(ident.chain_id, str(ident.agent_id), base=self.id_base)
        if ident.kind is IdentifierKind.DECENTRALIZED_ACCOUNT:
            return f"{self.id_base}/agent/by-account-did/{iri_encode_segment(ident.key)}"
        if ident.kind is IdentifierKind.UNIVERSAL_AGENT_ID:
            return (
                f"{self.id_base}/agent/aid/{ident.chain_id}/"
                f"{iri_encode_segment(ident.method_specific)}"
            )
        return f"{self.id_base}/agent/opaque/{iri_encode_segment(ident.key)}"


def _parse_chain_id(segment: str, raw: str) -> int:
    if not _DIGITS.fullmatch(segment):
        raise InvalidIdentifier(f"Chain id is not a non-negative integer: {segment!r}", value=raw)
    return int(segment)


# =============================================================================
# IRI BUILDERS
# =============================================================================


def agent_iri(chain_id: int | None, agent_id: str, *, base: str = DEFAULT_ID_BASE) -> str:
    return f"{base}/agent/{chain_id}/{iri_encode_segment(agent_id)}"


def account_iri(chain_id: int, address: str, *, base: str = DEFAULT_ID_BASE) -> str:
    return f"{base}/account/{chain_id}/{iri_encode_segment(address.lower())}"


def feedback_iri(
    chain_id: int,
    agent_id: str,
    client: str,
    feedback_index: int,
    *,
    base: str = DEFAULT_ID_BASE,
) -> str:
    return (
        f"{base}/feedback/{chain_id}/{iri_encode_segment(agent_id)}/"
        f"{iri_encode_segment(client.lower())}/{feedback_index}"
    )


def chain_event_iri(path: str, chain_id: int, event_id: str, *, base: str = DEFAULT_ID_BASE) -> str:
    """Node of one indexed event: ``{base}/validation-request/11155111/0xab-1``."""
    return f"{base}/{path}/{chain_id}/{iri_encode_segment(event_id)}"


def registry_iri(registry: str, *, base: str = DEFAULT_ID_BASE) -> str:
    key = registry.strip() if registry and registry.strip() else "default"
    return f"{base}/registry/{iri_encode_segment(key)}"


def identity_iri(agent_key: str, *, base: str = DEFAULT_ID_BASE) -> str:
    return f"{base}/identity/{iri_encode_segment(agent_key)}"


def identity_identifier_iri(agent_key: str, *, base: str = DEFAULT_ID_BASE) -> str:
    return f"{base}/identifier/{iri_encode_segment(agent_key)}"


def identity_descriptor_iri(agent_key: str, *, base: str = DEFAULT_ID_BASE) -> str:
    return f"{base}/identity-descriptor/{iri_encode_segment(agent_key)}"


def agent_descriptor_iri(agent_key: str, *, base: str = DEFAULT_ID_BASE) -> str:
    return f"{base}/agent-descriptor/{iri_encode_segment(agent_key)}"


def profile_iri(agent_key: str, *, base: str = DEFAULT_ID_BASE) -> str:
    return f"{base}/profile/{iri_encode_segment(agent_key)}"


def ingest_record_iri(
    chain_id: int | str,
    kind: str,
    entity_id: str,
    *,
    base: str = DEFAULT_ID_BASE,
) -> str:
    return (
        f"{base}/ingest-record/{iri_encode_segment(chain_id)}/"
        f"{iri_encode_segment(kind)}/{iri_encode_segment(entity_id)}"
    )


def chain_context(chain_id: int | str, *, base: str = DEFAULT_GRAPH_BASE) -> str:
    """Named graph context holding one chain's (or registry's) data."""
    return f"{base.rstrip('/')}/subgraph/{iri_encode_segment(chain_id)}"


__all__ = [
    "UAID_PREFIX",
    "DEFAULT_ID_BASE",
    "DEFAULT_GRAPH_BASE",
    "iri_encode_segment",
    "iri_encode_path",
    "is_hex_address",
    "normalize_address",
    "parse_route_params",
    "IdentifierKind",
    "CanonicalIdentifier",
    "IdentifierResolver",
    "agent_iri",
    "account_iri",
    "feedback_iri",
    "chain_event_iri",
    "registry_iri",
    "identity_iri",
    "identity_identifier_iri",
    "identity_descriptor_iri",
    "agent_descriptor_iri",
    "profile_iri",
    "ingest_record_iri",
    "chain_context",
]
