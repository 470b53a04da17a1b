"""Relational query API (D1-style HTTP SQL endpoint) and the agent row source.

The endpoint accepts ``{"sql": ..., "params": [...]}`` and answers::

    {"success": true, "result": [{"results": [ {...row...}, ... ]}]}

``success: false`` (with ``errors[0].message`` or ``error``) is an
:class:`UpstreamError`.  Transport failures come from the shared
:class:`ResilientTransport`.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from pydantic import SecretStr

from kgsync.core.errors import UpstreamError
from kgsync.core.logging import get_logger
from kgsync.core.watermarks import Position
from kgsync.execution.transport import ResilientTransport

logger = get_logger(__name__)

AGENT_COLUMNS = (
    "chainId",
    "agentId",
    "agentAddress",
    "agentOwner",
    "agentName",
    "tokenUri",
    "createdAtBlock",
    "createdAtTime",
    "description",
    "image",
    "type",
    "rawJson",
    "updatedAtTime",
)


class QueryApiClient:
    """POST SQL statements to an HTTP query API and return result rows."""

    def __init__(
        self,
        transport: ResilientTransport,
        url: str,
        token: SecretStr | str | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self._transport = transport
        self.url = url
        self._token = token.get_secret_value() if isinstance(token, SecretStr) else token
        self.timeout = timeout

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Execute *sql* with positional *params*; return the first result set.

        Raises:
            UpstreamError: The API answered with ``success: false`` or a
                body that is not JSON.
            TransportError: Retries exhausted or non-retryable HTTP status.
        """
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        response = await self._transport.request(
            "POST",
            self.url,
            json={"sql": sql, "params": list(params)},
            headers=headers,
            timeout=self.timeout,
            label="query-api",
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError(
                "Query API returned a non-JSON body", cause=exc
            ).with_context(url=self.url, source_name="query-api") from exc

        if not isinstance(data, dict) or data.get("success") is False:
            detail = _error_detail(data)
            raise UpstreamError(f"Query failed: {detail[:500]}").with_context(
                url=self.url, source_name="query-api"
            )

        result = data.get("result")
        if isinstance(result, list) and result and isinstance(result[0], dict):
            rows = result[0].get("results")
            if isinstance(rows, list):
                return rows
        return []


def _error_detail(data: Any) -> str:
    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            message = errors[0].get("message")
            if message:
                return str(message)
        if data.get("error"):
            return str(data["error"])
    return str(data)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def dedupe_agent_rows(rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep one row per UAID (``agentAddress``).

    The most recently updated row wins; ties go to the most recently created.
    Rows without an address pass through untouched (the emitter skips them).
    Output keeps the order in which each address was first seen.
    """
    by_address: dict[str, dict[str, Any]] = {}
    passthrough: list[dict[str, Any]] = []
    for row in rows:
        address = row.get("agentAddress")
        address = address.strip() if isinstance(address, str) else ""
        if not address:
            passthrough.append(row)
            continue
        previous = by_address.get(address)
        if previous is None:
            by_address[address] = row
            continue
        newer = (_as_int(row.get("updatedAtTime")), _as_int(row.get("createdAtTime")))
        older = (_as_int(previous.get("updatedAtTime")), _as_int(previous.get("createdAtTime")))
        if newer > older:
            by_address[address] = row
    return list(by_address.values()) + passthrough


class AgentRowSource:
    """Agent registry rows from the query API, paged by update time.

    The cursor key is ``COALESCE(updatedAtTime, createdAtTime, 0)``, matching
    :attr:`kgsync.graph.records.AgentRecord.position`; rows sharing an
    update time are ordered and resumed by ``agentAddress`` (the UAID).
    """

    def __init__(
        self,
        client: QueryApiClient,
        *,
        table: str = "agents",
        chain_ids: Sequence[int] = (),
        name: str = "agents",
    ) -> None:
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table!r}")
        self.client = client
        self.table = table
        self.chain_ids = tuple(chain_ids)
        self.name = name

    def build_query(
        self,
        after: Position | None,
        limit: int,
        after_id: str | None = None,
    ) -> tuple[str, list[Any]]:
        position = "COALESCE(updatedAtTime, createdAtTime, 0)"
        bound = after if after is not None else -1
        if after is not None and after_id is not None:
            where = [f"({position} > ? OR ({position} = ? AND agentAddress > ?))"]
            params: list[Any] = [bound, bound, after_id]
        else:
            where = [f"{position} > ?"]
            params = [bound]
        where.append("(isDuplicate IS NULL OR isDuplicate = 0)")
        if self.chain_ids:
            where.append(f"chainId IN ({', '.join('?' for _ in self.chain_ids)})")
            params.extend(self.chain_ids)
        params.append(limit)
        sql = (
            f"SELECT {', '.join(AGENT_COLUMNS)} FROM {self.table} "
            f"WHERE {' AND '.join(where)} "
            f"ORDER BY {position} ASC, agentAddress ASC LIMIT ?"
        )
        return sql, params

    async def fetch_after(
        self,
        after: Position | None,
        limit: int,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        sql, params = self.build_query(after, limit, after_id)
        rows = await self.client.query(sql, params)
        deduped = dedupe_agent_rows(rows)
        if len(deduped) != len(rows):
            logger.info("duplicate_agents_dropped", source=self.name, dropped=len(rows) - len(deduped))
        return deduped


__all__ = ["AGENT_COLUMNS", "AgentRowSource", "QueryApiClient", "dedupe_agent_rows"]
