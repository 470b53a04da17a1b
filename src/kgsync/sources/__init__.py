"""kgsync sources -- upstream collaborators the sync loop pages through."""

from kgsync.sources.accounts import AccountOwnerIndex, AccountReader, resolve_account_owner
from kgsync.sources.protocol import RecordSource
from kgsync.sources.query_api import AgentRowSource, QueryApiClient, dedupe_agent_rows
from kgsync.sources.subgraph import SubgraphClient, SubgraphEventSource

__all__ = [
    "AccountOwnerIndex",
    "AccountReader",
    "AgentRowSource",
    "QueryApiClient",
    "RecordSource",
    "SubgraphClient",
    "SubgraphEventSource",
    "dedupe_agent_rows",
    "resolve_account_owner",
]
