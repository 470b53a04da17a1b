"""kgsync sync -- per-stream incremental loops and their wiring."""

from kgsync.sync.loop import CycleReport, IncrementalSyncLoop, SyncState
from kgsync.sync.streams import StreamOutcome, agent_stream, feedback_stream, run_streams

__all__ = [
    "CycleReport",
    "IncrementalSyncLoop",
    "StreamOutcome",
    "SyncState",
    "agent_stream",
    "feedback_stream",
    "run_streams",
]
