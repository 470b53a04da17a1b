"""
Structured Turtle model: terms, stanzas and documents.

Emitters never concatenate Turtle text by hand.  They build
:class:`Stanza` values (subject, rdf types, ordered predicate/object
pairs) and collect them in a :class:`GraphDocument`, which carries its
header and body separately so the chunk splitter can work on structure
instead of scanning text.

Manifesto:
    - **Atomic stanzas:** A stanza renders to one ``.``-terminated block
      and is never split
    - **One escaper:** ``\\`` then ``"`` then CR then LF, in that order
    - **Native literals:** Numbers and booleans are emitted unquoted
    - **Versioned header:** Every document starts with the same
      ``HEADER_VERSION`` comment and prefix block, so independently
      emitted documents concatenate and chunk identically

Architecture:
    ::

        StanzaBuilder(Iri(agent), "core:AIAgent", "prov:Agent")
            .add("core:uaid", "uaid:aid:alpha")
            .add("core:hasIdentity", Iri(identity))
            .build()
              │
              ▼
        <https://.../agent/aid/295/alpha> a core:AIAgent, prov:Agent ;
          core:uaid "uaid:aid:alpha" ;
          core:hasIdentity <https://.../identity/alpha> .

Tags:
    rdf, turtle, escaping, stanza, graph-document, kgsync
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any

HEADER_VERSION = "kgsync-turtle/1"

PREFIXES: tuple[tuple[str, str], ...] = (
    ("owl", "http://www.w3.org/2002/07/owl#"),
    ("rdf", "http://www.w3.org/1999/02/22-rdf-syntax-ns#"),
    ("rdfs", "http://www.w3.org/2000/01/rdf-schema#"),
    ("xsd", "http://www.w3.org/2001/XMLSchema#"),
    ("prov", "http://www.w3.org/ns/prov#"),
    ("dcterms", "http://purl.org/dc/terms/"),
    ("schema", "http://schema.org/"),
    ("core", "https://agentictrust.io/ontology/core#"),
    ("eth", "https://agentictrust.io/ontology/eth#"),
    ("erc8004", "https://agentictrust.io/ontology/erc8004#"),
    ("erc8092", "https://agentictrust.io/ontology/erc8092#"),
)

_IRI_SCHEME = re.compile(r"^(https?|ipfs)://", re.IGNORECASE)
_IRI_STRIP = re.compile(r"[<>\s]")


def render_header() -> str:
    """Fixed namespace header; ends with the blank line that closes it."""
    lines = [f"# {HEADER_VERSION}"]
    lines.extend(f"@prefix {name}: <{iri}> ." for name, iri in PREFIXES)
    return "\n".join(lines) + "\n\n"


# =============================================================================
# TERMS
# =============================================================================


def escape_turtle_string(value: object) -> str:
    return (
        str(value)
        .replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\r", "\\r")
        .replace("\n", "\\n")
    )


@dataclass(frozen=True, slots=True)
class Iri:
    """Absolute IRI, rendered in angle brackets."""

    value: str

    def render(self) -> str:
        return f"<{self.value}>"


@dataclass(frozen=True, slots=True)
class QName:
    """Prefixed name such as ``core:AIAgent``, rendered as-is."""

    value: str

    def render(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class RawLiteral:
    """Triple-quoted literal for embedded upstream payloads."""

    text: str

    def render(self) -> str:
        return f'"""{escape_turtle_string(self.text)}"""'


@dataclass(frozen=True, slots=True)
class TypedLiteral:
    """Quoted literal with an explicit datatype (e.g. ``xsd:dateTime``)."""

    text: str
    datatype: str

    def render(self) -> str:
        return f'"{escape_turtle_string(self.text)}"^^{self.datatype}'


Term = Iri | QName | RawLiteral | TypedLiteral | str | int | float | bool


def render_term(value: Any) -> str | None:
    """Render an object term; ``None`` means the triple is omitted."""
    if value is None:
        return None
    if isinstance(value, (Iri, QName, RawLiteral, TypedLiteral)):
        return value.render()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return repr(value)
    return f'"{escape_turtle_string(value)}"'


def turtle_iri_or_literal(value: object) -> Iri | str | None:
    """http(s)/ipfs values become IRIs (``<>`` and whitespace stripped); others strings."""
    text = str(value if value is not None else "").strip()
    if not text:
        return None
    if _IRI_SCHEME.match(text):
        return Iri(_IRI_STRIP.sub("", text))
    return text


def json_text(payload: Any) -> str:
    """Deterministic JSON text of an upstream payload."""
    return json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)


def json_literal(payload: Any) -> RawLiteral:
    return RawLiteral(json_text(payload))


# =============================================================================
# STANZAS
# =============================================================================


def _render_subject(subject: Iri | str) -> str:
    return subject.render() if isinstance(subject, Iri) else subject


@dataclass(frozen=True)
class Stanza:
    """All emitted facts about one subject, terminated by ``.``."""

    subject: Iri | str
    types: tuple[str, ...] = ()
    properties: tuple[tuple[str, Any], ...] = ()

    def render(self) -> str:
        statements: list[str] = []
        if self.types:
            statements.append("a " + ", ".join(self.types))
        for predicate, value in self.properties:
            term = render_term(value)
            if term is not None:
                statements.append(f"{predicate} {term}")
        if not statements:
            raise ValueError(f"Stanza for {_render_subject(self.subject)} has no triples")
        head = f"{_render_subject(self.subject)} {statements[0]}"
        return head + "".join(f" ;\n  {s}" for s in statements[1:]) + " ."

    def block(self) -> str:
        """Rendered stanza plus the blank line separating it from the next."""
        return self.render() + "\n\n"


class StanzaBuilder:
    """Fluent builder producing one immutable :class:`Stanza`."""

    def __init__(self, subject: Iri | str, *types: str) -> None:
        self._subject = subject
        self._types = types
        self._properties: list[tuple[str, Any]] = []

    def add(self, predicate: str, value: Any) -> StanzaBuilder:
        """Append ``predicate value``; ``None`` and empty strings are dropped."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return self
        self._properties.append((predicate, value))
        return self

    def add_all(self, predicate: str, values: list[Any]) -> StanzaBuilder:
        for value in values:
            self.add(predicate, value)
        return self

    def build(self) -> Stanza:
        return Stanza(self._subject, tuple(self._types), tuple(self._properties))


# =============================================================================
# DOCUMENT
# =============================================================================


@dataclass
class GraphDocument:
    """Namespace header plus ordered stanzas; renders to self-contained Turtle."""

    stanzas: list[Stanza] = field(default_factory=list)
    header: str = field(default_factory=render_header)
    oversized: bool = False

    def add(self, stanza: Stanza) -> None:
        self.stanzas.append(stanza)

    def extend(self, stanzas: list[Stanza]) -> None:
        self.stanzas.extend(stanzas)

    def body(self) -> str:
        return "".join(s.block() for s in self.stanzas)

    def render(self) -> str:
        return self.header + self.body()

    def byte_size(self) -> int:
        return len(self.render().encode("utf-8"))

    def __len__(self) -> int:
        return len(self.stanzas)

    def __bool__(self) -> bool:
        return bool(self.stanzas)


__all__ = [
    "HEADER_VERSION",
    "PREFIXES",
    "render_header",
    "escape_turtle_string",
    "Iri",
    "QName",
    "RawLiteral",
    "TypedLiteral",
    "Term",
    "render_term",
    "turtle_iri_or_literal",
    "json_text",
    "json_literal",
    "Stanza",
    "StanzaBuilder",
    "GraphDocument",
]
