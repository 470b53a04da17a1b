"""Byte-budgeted chunk splitting of graph documents.

The store rejects request bodies above a few megabytes, so a large batch is
uploaded as several documents, each repeating the namespace header and
carrying a contiguous run of whole stanzas.

Two entry points:

- :func:`split_document` works on a :class:`GraphDocument`'s structure
  (preferred; no text scanning).
- :func:`split_turtle` works on Turtle text produced elsewhere: the header is
  every line up to and including the first blank line within the first 200
  lines, and stanzas are separated by blank lines.

Both pack greedily while ``current + next <= max_bytes``, open a new chunk
only when the current one already holds stanzas, and place a stanza larger
than the budget alone in its own chunk rather than dropping or cutting it.
"""

from __future__ import annotations

import re

from kgsync.core.logging import get_logger
from kgsync.graph.turtle import GraphDocument, Stanza

logger = get_logger(__name__)

DEFAULT_CHUNK_BYTES = 2_500_000
HEADER_LOOKAHEAD_LINES = 200

_BLANK_LINE_SPLIT = re.compile(r"\n\s*\n")


def _utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def split_document(doc: GraphDocument, max_bytes: int = DEFAULT_CHUNK_BYTES) -> list[GraphDocument]:
    """Split *doc* into documents of at most *max_bytes* UTF-8 bytes each.

    Returns ``[doc]`` unchanged when it already fits or when *max_bytes* is
    not positive.  A chunk exceeds the budget only when it holds a single
    stanza that does not fit next to the header.  It is flagged ``oversized``
    when that stanza alone is larger than the budget.
    """
    if max_bytes <= 0 or doc.byte_size() <= max_bytes:
        return [doc]

    header_bytes = _utf8_len(doc.header)
    chunks: list[GraphDocument] = []
    current: list[Stanza] = []
    current_bytes = header_bytes
    largest = 0

    def flush() -> None:
        chunks.append(
            GraphDocument(
                stanzas=list(current),
                header=doc.header,
                oversized=largest > max_bytes,
            )
        )

    for stanza in doc.stanzas:
        size = _utf8_len(stanza.block())
        if current and current_bytes + size > max_bytes:
            flush()
            current = []
            current_bytes = header_bytes
            largest = 0
        current.append(stanza)
        current_bytes += size
        largest = max(largest, size)

    if current:
        flush()
    if not chunks:
        return [doc]

    oversized = sum(1 for c in chunks if c.oversized)
    if oversized:
        logger.warning("oversized_stanza", chunks=len(chunks), oversized=oversized, max_bytes=max_bytes)
    logger.debug("document_split", stanzas=len(doc), chunks=len(chunks), max_bytes=max_bytes)
    return chunks


def split_header(text: str) -> tuple[str, str]:
    """Separate the leading header block of Turtle *text* from its body.

    Returns ``("", text)`` when no blank line occurs within the lookahead.
    """
    lines = text.split("\n")
    for i, line in enumerate(lines[:HEADER_LOOKAHEAD_LINES]):
        if not line.strip():
            return "\n".join(lines[: i + 1]), "\n".join(lines[i + 1 :])
    return "", text


def split_turtle(text: str, max_bytes: int = DEFAULT_CHUNK_BYTES) -> list[str]:
    """Split Turtle *text* into independently loadable chunks.

    Whitespace-only input yields no chunks.  Chunk bodies are the input's
    blank-line-separated blocks, stripped, each followed by one blank line.
    """
    if not text.strip():
        return []
    if max_bytes <= 0 or _utf8_len(text) <= max_bytes:
        return [text]

    header, body = split_header(text)
    prefix = f"{header}\n" if header else ""
    prefix_bytes = _utf8_len(prefix)
    blocks = [b.strip() for b in _BLANK_LINE_SPLIT.split(body)]

    chunks: list[str] = []
    current = prefix
    current_bytes = prefix_bytes
    has_stanzas = False

    for block in blocks:
        if not block:
            continue
        piece = f"{block}\n\n"
        size = _utf8_len(piece)
        if has_stanzas and current_bytes + size > max_bytes:
            chunks.append(current)
            current = prefix
            current_bytes = prefix_bytes
        current += piece
        current_bytes += size
        has_stanzas = True

    if has_stanzas:
        chunks.append(current)
    return chunks


def stanza_blocks(chunk: str) -> list[str]:
    """Stanza blocks of a chunk produced by :func:`split_turtle` (header dropped)."""
    _, body = split_header(chunk)
    return [b.strip() for b in _BLANK_LINE_SPLIT.split(body) if b.strip()]


__all__ = [
    "DEFAULT_CHUNK_BYTES",
    "HEADER_LOOKAHEAD_LINES",
    "split_document",
    "split_header",
    "split_turtle",
    "stanza_blocks",
]
