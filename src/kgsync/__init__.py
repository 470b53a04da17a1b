"""
kgsync - Incremental knowledge-graph sync.

Fetches agent and reputation records from upstream sources, resolves their
identifiers into stable node IRIs, emits Turtle, splits it into
byte-bounded chunks and publishes those into a GraphDB-style triple store,
advancing a per-stream cursor only after a batch is fully committed.
"""

__version__ = "0.1.0"
