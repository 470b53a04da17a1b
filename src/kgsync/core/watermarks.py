"""
Cursor (watermark) tracking for incremental sync streams.

Records, per stream, the highest position up to which every record has been
durably published to the triple store, so a restarted process resumes from
there instead of re-crawling the upstream source.

Manifesto:
    A cursor only ever moves forward, and only after the batch it covers
    has been fully committed.  The store itself never decides *when* to
    advance (the sync loop does), but it enforces the forward-only rule so
    a late or duplicated write cannot move it backward.

    - **Forward-only advancement:** Writes at or below the current position
      are no-ops
    - **Typed positions:** Block numbers and timestamps compare as integers,
      ids compare as strings; mixing types for one stream is an error
    - **Tie-breaking:** Many records can share one position (several events
      in a block).  A cursor may carry the id of the last record committed
      at its position, meaning "this position is done up to that id"; a
      bare position means every record at it is done
    - **Persistence-agnostic:** SQLite connection or in-memory dict (tests)

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────┐
        │                     CursorStore                          │
        └──────────────────────────────────────────────────────────┘

        write_cursor("feedbacks:11155111", 103)
              │
              ▼
        ┌──────────────────────────────────────────────────────────┐
        │ sync_cursors table (or in-memory dict)                   │
        │ stream            | position | last_id  | position_type  │
        │ feedbacks:1115... | 103      | 0xab..-1 | int            │
        └──────────────────────────────────────────────────────────┘

Examples:
    >>> store = CursorStore()
    >>> store.read_cursor("agents") is None
    True
    >>> store.write_cursor("agents", 100).position
    100
    >>> store.write_cursor("agents", 99).position
    100

Guardrails:
    ❌ DON'T: Write the cursor before every chunk of the batch is published
    ✅ DO: Write it once, in the sync loop's commit step

    ❌ DON'T: Run two processes against the same stream without CAS storage
    ✅ DO: Keep a single writer per stream

Tags:
    watermark, cursor, incremental, resume, checkpoint, kgsync
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from kgsync.core.errors import CursorRegression
from kgsync.core.logging import get_logger

logger = get_logger(__name__)

Position = int | str

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS sync_cursors ("
    "  stream TEXT PRIMARY KEY,"
    "  position TEXT NOT NULL,"
    "  position_type TEXT NOT NULL,"
    "  last_id TEXT,"
    "  metadata_json TEXT,"
    "  updated_at TEXT"
    ")"
)

_COLUMNS = "stream, position, position_type, last_id, metadata_json, updated_at"


# ---------------------------------------------------------------------------
# Value object
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SyncCursor:
    """Last committed position of one stream.

    Attributes:
        stream: Stream identifier (e.g. ``"feedbacks:11155111"``).
        position: Highest committed position; int or str.
        metadata: Free-form JSON-serialisable extras (batch sizes, context).
        updated_at: When this cursor was last advanced.
        last_id: Id of the last record committed at ``position``, or None
            when every record at ``position`` is committed.
    """

    stream: str
    position: Position
    metadata: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None
    last_id: str | None = None

    @property
    def key(self) -> tuple:
        return cursor_key(self.position, self.last_id)


def cursor_key(position: Position, last_id: str | None = None) -> tuple:
    """Sort key of a ``(position, id)`` pair.

    A bare position sorts after every id at that position.

    >>> cursor_key(102, "b") < cursor_key(102, "c") < cursor_key(102) < cursor_key(103, "a")
    True
    """
    if last_id is None:
        return (position, 1, "")
    return (position, 0, last_id)


def _position_type(position: Position) -> str:
    if isinstance(position, bool) or not isinstance(position, (int, str)):
        raise CursorRegression(f"Unsupported cursor position type: {type(position).__name__}")
    return "int" if isinstance(position, int) else "str"


def _decode(raw: str, kind: str) -> Position:
    return int(raw) if kind == "int" else raw


# ---------------------------------------------------------------------------
# CursorStore
# ---------------------------------------------------------------------------


class CursorStore:
    """Persistence-agnostic cursor store.

    If *conn* is supplied (any object exposing ``.execute()`` and
    ``.commit()``), cursors are persisted to the ``sync_cursors`` table.
    Otherwise an in-memory dict is used.

    Args:
        conn: Optional database connection.
    """

    def __init__(self, conn: Any | None = None) -> None:
        self._conn = conn
        self._mem: dict[str, SyncCursor] = {}
        if self._conn is not None:
            self._conn.execute(_SCHEMA)
            columns = {row[1] for row in self._conn.execute("PRAGMA table_info(sync_cursors)")}
            if "last_id" not in columns:
                # Tables created before ids were tracked.
                self._conn.execute("ALTER TABLE sync_cursors ADD COLUMN last_id TEXT")
            self._conn.commit()

    @classmethod
    def sqlite(cls, path: str | Path) -> CursorStore:
        """Open (creating if needed) a SQLite-backed store at *path*."""
        path = Path(path)
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        return cls(conn=sqlite3.connect(str(path)))

    # -- core operations -----------------------------------------------------

    def read_cursor(self, stream: str) -> Position | None:
        """Return the committed position of *stream*, or ``None``."""
        cursor = self.get(stream)
        return cursor.position if cursor is not None else None

    def get(self, stream: str) -> SyncCursor | None:
        """Return the full :class:`SyncCursor` of *stream*, or ``None``."""
        if self._conn is not None:
            return self._get_db(stream)
        return self._mem.get(stream)

    def write_cursor(
        self,
        stream: str,
        position: Position,
        *,
        last_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        force: bool = False,
    ) -> SyncCursor:
        """Move the cursor forward (forward-only).

        ``(position, last_id)`` at or below the current cursor, in
        :func:`cursor_key` order, leaves the cursor unchanged and returns it.
        With ``force`` the cursor is replaced even when that moves it
        backward, and *metadata* replaces the stored metadata instead of
        being merged into it; this is how a reset batch commits.

        Raises:
            CursorRegression: If *position* has a different type than the
                stored position.
        """
        kind = _position_type(position)
        existing = self.get(stream)
        if existing is not None:
            if _position_type(existing.position) != kind:
                raise CursorRegression(
                    f"Cursor type mismatch for {stream!r}: "
                    f"stored {_position_type(existing.position)}, got {kind}"
                ).with_context(stream=stream)
            if not force and cursor_key(position, last_id) <= existing.key:
                return existing

        merged = {} if force or existing is None else dict(existing.metadata)
        cursor = SyncCursor(
            stream=stream,
            position=position,
            metadata={**merged, **(metadata or {})},
            updated_at=datetime.now(UTC),
            last_id=last_id,
        )
        self._store(cursor)
        logger.debug(
            "cursor_replaced" if force else "cursor_advanced",
            stream=stream,
            previous=existing.position if existing else None,
            position=position,
            last_id=last_id,
        )
        return cursor

    def annotate(self, stream: str, **metadata: Any) -> SyncCursor | None:
        """Merge *metadata* into the cursor of *stream* without moving it.

        Returns the updated cursor, or ``None`` when the stream has none.
        """
        existing = self.get(stream)
        if existing is None:
            return None
        cursor = replace(existing, metadata={**existing.metadata, **metadata})
        self._store(cursor)
        return cursor

    def reset(self, stream: str) -> bool:
        """Drop the cursor of *stream*. Returns True if it existed."""
        if self._conn is not None:
            cur = self._conn.execute("DELETE FROM sync_cursors WHERE stream = ?", (stream,))
            self._conn.commit()
            return cur.rowcount > 0
        return self._mem.pop(stream, None) is not None

    def list_all(self) -> list[SyncCursor]:
        """Return every tracked cursor, ordered by stream name."""
        if self._conn is not None:
            rows = self._conn.execute(f"SELECT {_COLUMNS} FROM sync_cursors ORDER BY stream").fetchall()
            return [self._row_to_cursor(r) for r in rows]
        return [self._mem[k] for k in sorted(self._mem)]

    def close(self) -> None:
        if self._conn is not None and hasattr(self._conn, "close"):
            self._conn.close()

    def _store(self, cursor: SyncCursor) -> None:
        if self._conn is not None:
            self._upsert_db(cursor)
        else:
            self._mem[cursor.stream] = cursor

    # -- internal: database backend ------------------------------------------

    def _get_db(self, stream: str) -> SyncCursor | None:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM sync_cursors WHERE stream = ?",
            (stream,),
        ).fetchone()
        return self._row_to_cursor(row) if row is not None else None

    @staticmethod
    def _row_to_cursor(row: tuple) -> SyncCursor:
        return SyncCursor(
            stream=row[0],
            position=_decode(row[1], row[2]),
            last_id=row[3],
            metadata=json.loads(row[4]) if row[4] else {},
            updated_at=datetime.fromisoformat(row[5]) if row[5] else None,
        )

    def _upsert_db(self, cursor: SyncCursor) -> None:
        self._conn.execute(
            f"INSERT INTO sync_cursors ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(stream) DO UPDATE SET "
            "  position = excluded.position, "
            "  position_type = excluded.position_type, "
            "  last_id = excluded.last_id, "
            "  metadata_json = excluded.metadata_json, "
            "  updated_at = excluded.updated_at",
            (
                cursor.stream,
                str(cursor.position),
                _position_type(cursor.position),
                cursor.last_id,
                json.dumps(cursor.metadata) if cursor.metadata else None,
                cursor.updated_at.isoformat() if cursor.updated_at else None,
            ),
        )
        self._conn.commit()


__all__ = ["Position", "SyncCursor", "CursorStore", "cursor_key"]
