"""GraphQL event index (subgraph) client and the event sources paged from it.

Every collection is paged by ``(cursor_field, id)``: the index orders
entities by ``cursor_field`` and breaks ties by ``id``, so a page boundary
falling inside a group of events that share a block is resumed with::

    where: {or: [{blockNumber_gt: "102"}, {blockNumber: "102", id_gt: "0xab-3"}]}
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import SecretStr

from kgsync.core.errors import UpstreamError
from kgsync.core.logging import get_logger
from kgsync.core.watermarks import Position
from kgsync.execution.transport import ResilientTransport

logger = get_logger(__name__)

_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

FEEDBACK_FIELDS = """
    id
    agent { id agentWallet }
    clientAddress
    feedbackIndex
    score
    feedbackJson
    txHash
    blockNumber
    timestamp
"""

FEEDBACK_REVOCATION_FIELDS = """
    id
    agent { id agentWallet }
    clientAddress
    feedbackIndex
    txHash
    blockNumber
    timestamp
"""

FEEDBACK_RESPONSE_FIELDS = """
    id
    agent { id agentWallet }
    clientAddress
    feedbackIndex
    responder
    responseUri
    responseJson
    responseHash
    txHash
    blockNumber
    timestamp
"""

VALIDATION_REQUEST_FIELDS = """
    id
    agent { id agentWallet }
    requestUri
    requestJson
    txHash
    blockNumber
    timestamp
"""

VALIDATION_RESPONSE_FIELDS = """
    id
    agent { id agentWallet }
    responseJson
    txHash
    blockNumber
    timestamp
"""

ASSOCIATION_FIELDS = """
    id
    initiatorAccount { id }
    approverAccount { id }
    interfaceId
    createdTxHash
    createdBlockNumber
    createdTimestamp
    lastUpdatedTxHash
    lastUpdatedBlockNumber
    lastUpdatedTimestamp
"""

ASSOCIATION_REVOCATION_FIELDS = """
    id
    associationId
    revokedAt
    txHash
    blockNumber
    timestamp
"""


def build_after_query(
    collection: str,
    fields: str,
    cursor_field: str,
    after: Position | None,
    first: int,
    *,
    after_id: str | None = None,
) -> str:
    """GraphQL page of *collection* after ``(after, after_id)``, ascending.

    Without *after_id* the bound is ``cursor_field > after``.
    """
    for name in (collection, cursor_field):
        if not _NAME.fullmatch(name):
            raise ValueError(f"Invalid GraphQL name: {name!r}")
    if after is None:
        where = ""
    elif after_id is None:
        where = f", where: {{{cursor_field}_gt: {json.dumps(str(after))}}}"
    else:
        bound = json.dumps(str(after))
        where = (
            f", where: {{or: [{{{cursor_field}_gt: {bound}}}, "
            f"{{{cursor_field}: {bound}, id_gt: {json.dumps(after_id)}}}]}}"
        )
    return (
        f"query {{\n"
        f"  {collection}(first: {int(first)}, orderBy: {cursor_field}, "
        f"orderDirection: asc{where}) {{{fields}}}\n"
        f"}}"
    )


class SubgraphClient:
    """POST GraphQL queries to an event index endpoint."""

    def __init__(
        self,
        transport: ResilientTransport,
        url: str,
        *,
        api_key: SecretStr | str | None = None,
    ) -> None:
        self._transport = transport
        self.url = url
        self._api_key = api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key

    async def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run *query* and return its ``data`` object.

        Raises:
            UpstreamError: GraphQL ``errors`` in the response, or no ``data``.
        """
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        response = await self._transport.request(
            "POST",
            self.url,
            json={"query": query, "variables": variables or {}},
            headers=headers,
            label="subgraph",
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError("Event index returned a non-JSON body", cause=exc).with_context(
                url=self.url, source_name="subgraph"
            ) from exc

        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            message = errors[0].get("message") if isinstance(errors[0], dict) else str(errors[0])
            raise UpstreamError(f"GraphQL error: {message}").with_context(
                url=self.url, source_name="subgraph"
            )
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise UpstreamError("GraphQL response has no data").with_context(
                url=self.url, source_name="subgraph"
            )
        return data

    async def fetch_after(
        self,
        collection: str,
        fields: str,
        cursor_field: str,
        after: Position | None,
        first: int,
        *,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Up to *first* entities of *collection* after ``(after, after_id)``."""
        query = build_after_query(collection, fields, cursor_field, after, first, after_id=after_id)
        data = await self.execute(query)
        items = data.get(collection)
        return items if isinstance(items, list) else []


class SubgraphEventSource:
    """One event collection, paged by ``(cursor_field, id)``."""

    def __init__(
        self,
        client: SubgraphClient,
        *,
        collection: str,
        fields: str,
        cursor_field: str = "blockNumber",
        name: str | None = None,
    ) -> None:
        self.client = client
        self.collection = collection
        self.fields = fields
        self.cursor_field = cursor_field
        self.name = name or collection

    async def fetch_after(
        self,
        after: Position | None,
        limit: int,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        return await self.client.fetch_after(
            self.collection, self.fields, self.cursor_field, after, limit, after_id=after_id
        )


__all__ = [
    "ASSOCIATION_FIELDS",
    "ASSOCIATION_REVOCATION_FIELDS",
    "FEEDBACK_FIELDS",
    "FEEDBACK_RESPONSE_FIELDS",
    "FEEDBACK_REVOCATION_FIELDS",
    "VALIDATION_REQUEST_FIELDS",
    "VALIDATION_RESPONSE_FIELDS",
    "SubgraphClient",
    "SubgraphEventSource",
    "build_after_query",
]
