"""Composition root: settings in, running streams out.

Nothing below this module reads configuration.  :func:`build_loops` turns
one :class:`SyncSettings` into transport, store client, publisher, cursor
store and the configured streams; :func:`run_configured` runs them once.

Usage:
    >>> settings = load_settings()
    >>> outcomes = asyncio.run(run_configured(settings))
"""

from __future__ import annotations

import asyncio
import sys

from kgsync.core.errors import ConfigurationMissing
from kgsync.core.identifiers import IdentifierResolver
from kgsync.core.logging import configure_logging, get_logger
from kgsync.core.settings import SyncSettings, load_settings
from kgsync.core.watermarks import CursorStore
from kgsync.execution.rate_limit import TokenBucketLimiter
from kgsync.execution.transport import ResilientTransport
from kgsync.sources.accounts import AccountOwnerIndex, AccountReader
from kgsync.sources.query_api import QueryApiClient
from kgsync.sources.subgraph import SubgraphClient
from kgsync.store.graphdb import GraphStoreClient, StoreCredentials
from kgsync.store.publisher import StorePublisher
from kgsync.sync.loop import IncrementalSyncLoop
from kgsync.sync.streams import EVENT_STREAMS, StreamOutcome, agent_stream, event_stream, run_streams

logger = get_logger(__name__)


def build_transport(settings: SyncSettings) -> ResilientTransport:
    limiter = None
    if settings.http_rate_per_second:
        limiter = TokenBucketLimiter(
            rate=settings.http_rate_per_second,
            capacity=max(1.0, settings.http_rate_per_second),
        )
    return ResilientTransport.create(settings.retry_policy(), limiter=limiter)


def build_account_reader(settings: SyncSettings, *, transport: ResilientTransport) -> AccountReader:
    """JSON-RPC reader for owner resolution on the configured chain.

    Raises:
        ConfigurationMissing: No RPC URL configured.
    """
    settings.require("rpc_url")
    return AccountReader(transport, settings.rpc_url)


def build_loops(
    settings: SyncSettings,
    *,
    transport: ResilientTransport,
    cursors: CursorStore,
) -> list[IncrementalSyncLoop]:
    """Wire every stream the settings have an upstream for.

    The event index yields one stream per kind in :data:`EVENT_STREAMS`.
    With an RPC URL, those streams also type the accounts they touch by
    resolving each account's owner; the owner cache is shared across them.

    Raises:
        ConfigurationMissing: No store URL, or no upstream configured at all.
    """
    settings.require("store_base_url")

    store = GraphStoreClient(
        transport,
        settings.store_base_url,
        settings.store_repository,
        StoreCredentials.from_settings(settings),
        upload_timeout=settings.store_upload_timeout,
    )
    publisher = StorePublisher(store, chunk_bytes=settings.chunk_bytes)
    resolver = IdentifierResolver(settings.uaid_chain_id, id_base=settings.id_base)

    loops: list[IncrementalSyncLoop] = []
    if settings.query_api_url:
        settings.require("uaid_chain_id")
        loops.append(
            agent_stream(
                QueryApiClient(transport, settings.query_api_url, settings.query_api_token),
                resolver,
                publisher,
                cursors,
                chain_id=settings.uaid_chain_id,
                graph_base=settings.graph_base,
                page_size=settings.page_size,
            )
        )
    if settings.subgraph_url:
        settings.require("chain_id")
        index = SubgraphClient(transport, settings.subgraph_url)
        owners = None
        if settings.rpc_url:
            owners = AccountOwnerIndex(build_account_reader(settings, transport=transport))
        for kind in EVENT_STREAMS:
            loops.append(
                event_stream(
                    kind,
                    index,
                    resolver,
                    publisher,
                    cursors,
                    chain_id=settings.chain_id,
                    graph_base=settings.graph_base,
                    page_size=settings.page_size,
                    owners=owners,
                )
            )

    if not loops:
        raise ConfigurationMissing(
            "No upstream configured: set KGSYNC_QUERY_API_URL and/or KGSYNC_SUBGRAPH_URL",
            missing=["query_api_url", "subgraph_url"],
        )
    return loops


async def run_configured(
    settings: SyncSettings,
    *,
    reset: bool = False,
    drain: bool = True,
) -> list[StreamOutcome]:
    """Build everything from *settings*, run all streams once, clean up."""
    cursors = CursorStore.sqlite(settings.cursor_db_path)
    try:
        async with build_transport(settings) as transport:
            loops = build_loops(settings, transport=transport, cursors=cursors)
            logger.info("sync_started", streams=[loop.name for loop in loops], reset=reset)
            return await run_streams(loops, reset=reset, drain=drain)
    finally:
        cursors.close()


def main() -> int:
    """Console entry point; configuration comes from ``KGSYNC_*`` only."""
    try:
        settings = load_settings()
    except ConfigurationMissing as exc:
        configure_logging()
        logger.error("configuration_invalid", error=exc.message, missing=exc.missing)
        return 2
    configure_logging(level=settings.log_level, json_format=settings.json_logs)
    try:
        outcomes = asyncio.run(run_configured(settings))
    except ConfigurationMissing as exc:
        logger.error("configuration_invalid", error=exc.message, missing=exc.missing)
        return 2
    return 0 if all(o.ok for o in outcomes) else 1


__all__ = ["build_account_reader", "build_loops", "build_transport", "main", "run_configured"]


if __name__ == "__main__":
    sys.exit(main())
