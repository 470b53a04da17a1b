"""
Incremental sync loop: one stream, one cursor, one batch at a time.

Manifesto:
    The cursor is the only durable state a stream has, so it moves only
    after every chunk of a batch is in the store.  Everything before the
    commit is repeatable: a crash or a failed chunk leaves the cursor where
    it was, the next cycle re-fetches the same rows, and stable node names
    turn the re-upload into a no-op upsert.

    - **Composite bound:** Fetch strictly after ``(position, id)``, ascending,
      so rows sharing a position are never split across a page and lost
    - **Monotonic filter:** Late rows at or below the cursor are dropped
    - **Ordered chunks:** Uploaded one at a time, in document order
    - **All-or-nothing commit:** Any failure leaves the cursor untouched
    - **Resumable reset:** A reset marks the cursor ``reset_pending`` before
      it clears anything; a cycle that finds the mark redoes the reset

    A full page in which every row fails validation cannot move the cursor
    (there is no included row to commit), so the stream stays on that page
    until upstream fixes the rows.  The cycle logs ``cursor_stalled`` when
    this happens.

Architecture:
    ::

        IDLE ─▶ FETCHING ─▶ RESOLVING ─▶ EMITTING ─▶ PUBLISHING ─▶ COMMITTING ─▶ IDLE
                   │             │            │            │             │
                   └─────────────┴────────────┴────────────┴─────────────┴──▶ FAILED

        run_cycle(reset=True):
            fetch from the beginning (the stored cursor stays put)
            cursors.annotate(stream, reset_pending=True)
            publisher.publish(..., reset=True, section=...) clears the
            context, or only this stream's section of it, before chunk one
            cursors.write_cursor(..., force=True) replaces the cursor

Examples:
    >>> loop = IncrementalSyncLoop("feedbacks:1", source, emitter, publisher,
    ...                            cursors, context=chain_context(1))
    >>> report = await loop.run_cycle()
    >>> report.cursor_before, report.cursor_after
    (100, 103)

Tags:
    sync, cursor, watermark, incremental, state-machine, kgsync
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from kgsync.core.logging import LogContext, get_logger
from kgsync.core.watermarks import CursorStore, Position
from kgsync.graph.emitters import Emitter
from kgsync.sources.protocol import RecordSource
from kgsync.store.graphdb import Section
from kgsync.store.publisher import StorePublisher

logger = get_logger(__name__)


class SyncState(str, Enum):
    """Phases of one sync cycle."""

    IDLE = "idle"
    FETCHING = "fetching"
    RESOLVING = "resolving"
    EMITTING = "emitting"
    PUBLISHING = "publishing"
    COMMITTING = "committing"
    FAILED = "failed"


@dataclass
class CycleReport:
    """What one :meth:`IncrementalSyncLoop.run_cycle` did."""

    stream: str
    cursor_before: Position | None = None
    cursor_after: Position | None = None
    fetched: int = 0
    included: int = 0
    skipped: int = 0
    chunks: int = 0
    bytes_published: int = 0
    reset: bool = False
    committed: bool = False
    states: list[SyncState] = field(default_factory=list)
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def advanced(self) -> bool:
        return self.committed

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream": self.stream,
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "fetched": self.fetched,
            "included": self.included,
            "skipped": self.skipped,
            "chunks": self.chunks,
            "bytes_published": self.bytes_published,
            "reset": self.reset,
            "committed": self.committed,
            "states": [s.value for s in self.states],
            "error": self.error,
            "duration_seconds": self.duration_seconds,
        }


class IncrementalSyncLoop:
    """Fetch → emit → chunk → publish → commit for a single stream.

    Args:
        name: Stream id; also the cursor key.
        source: Upstream rows, paged by cursor.
        emitter: Turns rows into a graph document.
        publisher: Uploads documents in byte-bounded chunks.
        cursors: Durable cursor store (single writer per stream).
        context: Named graph context the stream publishes into.
        page_size: Maximum rows per fetch.
    """

    def __init__(
        self,
        name: str,
        source: RecordSource,
        emitter: Emitter,
        publisher: StorePublisher,
        cursors: CursorStore,
        *,
        context: str,
        page_size: int = 500,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.name = name
        self.source = source
        self.emitter = emitter
        self.publisher = publisher
        self.cursors = cursors
        self.context = context
        self.page_size = page_size
        self._state = SyncState.IDLE
        self.history: list[SyncState] = [SyncState.IDLE]

    @property
    def state(self) -> SyncState:
        return self._state

    def _enter(self, state: SyncState) -> None:
        self._state = state
        self.history.append(state)

    async def run_cycle(self, reset: bool = False) -> CycleReport:
        """Run one fetch-and-publish cycle.

        With *reset*, rows are fetched from the beginning and the graph
        context (or, for emitters with ``section_reset``, this stream's
        section of it) is cleared once before the first chunk is uploaded.
        The stored cursor is only replaced at commit; until then it carries
        ``reset_pending`` so a failed reset is redone by the next cycle.

        Raises:
            SyncError: Any per-batch failure (exhausted transport retries,
                store rejection, upstream error); the cursor is unchanged.
        """
        self.history = [SyncState.IDLE]
        report = CycleReport(stream=self.name, reset=reset, states=self.history)
        max_position: Position | None = None

        async with LogContext(stream=self.name):
            try:
                stored = self.cursors.get(self.name)
                if stored is not None and stored.metadata.get("reset_pending") and not reset:
                    logger.warning("reset_resumed", cursor=stored.position)
                    reset = report.reset = True
                cursor = stored.position if stored is not None else None
                report.cursor_before = cursor
                report.cursor_after = cursor
                after, after_id = (None, None)
                if stored is not None and not reset:
                    after, after_id = stored.position, stored.last_id

                self._enter(SyncState.FETCHING)
                rows = await self.source.fetch_after(after, self.page_size, after_id)
                report.fetched = len(rows)
                if not rows:
                    return self._finish(report, "cycle_noop", reason="no_rows")

                self._enter(SyncState.RESOLVING)
                await self.emitter.prepare(rows)

                self._enter(SyncState.EMITTING)
                result = self.emitter.emit(rows, after=after, after_id=after_id)
                report.included = result.included
                report.skipped = result.skipped
                max_position = result.max_position
                if result.included == 0 or max_position is None:
                    if report.fetched >= self.page_size:
                        logger.warning(
                            "cursor_stalled",
                            cursor=cursor,
                            fetched=report.fetched,
                            skip_reasons=dict(result.skip_reasons),
                        )
                    return self._finish(report, "cycle_noop", reason="all_rows_skipped")

                self._enter(SyncState.PUBLISHING)
                if reset:
                    self.cursors.annotate(self.name, reset_pending=True)
                published = await self.publisher.publish(
                    result.document, self.context, reset=reset, section=self._section()
                )
                report.chunks = published.chunks
                report.bytes_published = published.bytes_accepted

                self._enter(SyncState.COMMITTING)
                committed = self.cursors.write_cursor(
                    self.name,
                    max_position,
                    last_id=result.max_id,
                    metadata={"included": result.included, "context": self.context},
                    force=reset,
                )
                report.cursor_after = committed.position
                report.committed = True
                return self._finish(report, "cycle_committed")

            except asyncio.CancelledError:
                self._fail(report, "cancelled", max_position)
                raise
            except Exception as exc:
                self._fail(report, str(exc), max_position, error_type=type(exc).__name__)
                raise

    def _section(self) -> Section | None:
        if not self.emitter.section_reset:
            return None
        return Section(self.emitter.kind, self.emitter.section_edges)

    def _finish(self, report: CycleReport, event: str, **fields: Any) -> CycleReport:
        self._enter(SyncState.IDLE)
        report.completed_at = datetime.now(UTC)
        logger.info(
            event,
            cursor_before=report.cursor_before,
            cursor_after=report.cursor_after,
            fetched=report.fetched,
            included=report.included,
            skipped=report.skipped,
            chunks=report.chunks,
            bytes=report.bytes_published,
            **fields,
        )
        return report

    def _fail(
        self,
        report: CycleReport,
        error: str,
        max_position: Position | None,
        **fields: Any,
    ) -> None:
        self._enter(SyncState.FAILED)
        report.error = error
        report.cursor_after = report.cursor_before
        report.completed_at = datetime.now(UTC)
        logger.error(
            "cycle_failed",
            position_from=report.cursor_before,
            position_to=max_position,
            error=error,
            **fields,
        )

    async def drain(self, *, reset: bool = False, max_cycles: int | None = None) -> list[CycleReport]:
        """Run cycles until a fetch returns fewer rows than the page size.

        Also stops after a cycle that commits nothing, so a page of nothing
        but skipped rows cannot spin forever.
        """
        reports: list[CycleReport] = []
        while max_cycles is None or len(reports) < max_cycles:
            report = await self.run_cycle(reset=reset and not reports)
            reports.append(report)
            if report.fetched < self.page_size or not report.committed:
                break
        return reports


__all__ = ["CycleReport", "IncrementalSyncLoop", "SyncState"]
