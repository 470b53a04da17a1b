"""
Record source protocol consumed by the incremental sync loop.

A source returns upstream rows strictly after an exclusive lower bound,
ascending by the stream's ``(position, id)`` key, at most ``limit`` rows
per call.  It knows nothing about Turtle, the store or cursors.

The bound is composite because many rows can share one position (several
events in one block).  With ``after_id`` set, rows at ``after`` whose id
sorts after ``after_id`` still qualify; without it, the whole ``after``
position is done.

Usage:
    class MySource:
        name = "widgets"

        async def fetch_after(self, after, limit, after_id=None):
            return await api.list_widgets(after=(after, after_id), limit=limit)
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from kgsync.core.watermarks import Position


@runtime_checkable
class RecordSource(Protocol):
    """Anything the sync loop can page through by cursor."""

    name: str

    async def fetch_after(
        self,
        after: Position | None,
        limit: int,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Rows with ``(position, id) > (after, after_id)`` (all rows if ``after`` is None)."""
        ...
