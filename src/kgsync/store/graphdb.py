"""GraphDB-style triple store client (RDF4J REST protocol).

Endpoints used::

    POST   {base}/repositories/{repo}/statements?context=<ctx>   upload Turtle
    DELETE {base}/repositories/{repo}/statements?context=<ctx>   clear a context
    POST   {base}/repositories/{repo}                            SPARQL query
    POST   {base}/repositories/{repo}/statements                 SPARQL update (section clears)

Every call goes through the shared :class:`ResilientTransport`.  A
non-retryable HTTP status from the store surfaces as :class:`StoreRejected`;
an exhausted retry budget surfaces as :class:`TransportError`.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from pydantic import SecretStr

from kgsync.core.errors import StoreRejected, TransportError
from kgsync.core.logging import get_logger
from kgsync.execution.transport import ResilientTransport
from kgsync.graph.turtle import PREFIXES

if TYPE_CHECKING:
    from kgsync.core.settings import SyncSettings

logger = get_logger(__name__)

ACCESS_CLIENT_ID_HEADER = "CF-Access-Client-Id"
ACCESS_CLIENT_SECRET_HEADER = "CF-Access-Client-Secret"

_KIND = re.compile(r"[a-z][a-z0-9-]*")
_QNAME = re.compile(r"[a-z][a-z0-9]*:[A-Za-z][A-Za-z0-9_]*")


def _secret(value: SecretStr | str | None) -> str | None:
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    return value or None


@dataclass(frozen=True)
class StoreCredentials:
    """Opaque credentials for the store: basic auth and/or access-client headers."""

    username: str | None = None
    password: SecretStr | None = None
    access_client_id: str | None = None
    access_client_secret: SecretStr | None = None

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> StoreCredentials:
        return cls(
            username=settings.store_username,
            password=settings.store_password,
            access_client_id=settings.store_access_client_id,
            access_client_secret=settings.store_access_client_secret,
        )

    def auth(self) -> httpx.BasicAuth | None:
        password = _secret(self.password)
        if not self.username or not password:
            return None
        return httpx.BasicAuth(self.username, password)

    def headers(self) -> dict[str, str]:
        secret = _secret(self.access_client_secret)
        if not self.access_client_id or not secret:
            return {}
        return {
            ACCESS_CLIENT_ID_HEADER: self.access_client_id,
            ACCESS_CLIENT_SECRET_HEADER: secret,
        }

    def __repr__(self) -> str:
        return (
            f"StoreCredentials(username={self.username!r}, "
            f"access_client_id={self.access_client_id!r})"
        )


@dataclass(frozen=True)
class UploadResult:
    """Outcome of one accepted upload."""

    bytes_accepted: int
    context: str | None = None
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class Section:
    """What one stream owns inside a context it shares with other streams.

    ``kind`` is the ingest kind of its records; ``edges`` are the
    predicates other nodes use to point at its entities.
    """

    kind: str
    edges: tuple[str, ...] = ()


def section_clear_update(context: str, section: Section) -> str:
    """SPARQL UPDATE removing one section from *context*.

    Removed: every ingest record of ``section.kind``, every statement about
    an entity such a record points at through ``core:recordsEntity``, and
    every ``section.edges`` statement pointing at one of those entities.
    """
    if not _KIND.fullmatch(section.kind):
        raise ValueError(f"Invalid ingest kind: {section.kind!r}")
    for edge in section.edges:
        if not _QNAME.fullmatch(edge):
            raise ValueError(f"Invalid edge predicate: {edge!r}")
    if any(c in context for c in "<>\" \n"):
        raise ValueError(f"Invalid graph context: {context!r}")
    lines = [f"PREFIX {name}: <{iri}>" for name, iri in PREFIXES]
    lines += [
        f"WITH <{context}>",
        "DELETE { ?s ?p ?o }",
        "WHERE {",
        f'  ?record core:ingestEntityKind "{section.kind}" ;',
        "          core:recordsEntity ?entity .",
        "  { ?record ?p ?o . BIND(?record AS ?s) }",
        "  UNION { ?entity ?p ?o . BIND(?entity AS ?s) }",
    ]
    if section.edges:
        lines.append(
            f"  UNION {{ VALUES ?p {{ {' '.join(section.edges)} }} ?s ?p ?entity . BIND(?entity AS ?o) }}"
        )
    lines.append("}")
    return "\n".join(lines) + "\n"


class GraphStoreClient:
    """Upload, clear and query one repository of a triple store.

    Args:
        transport: Shared resilient transport.
        base_url: Store base URL (e.g. ``https://graphdb.example.org``).
        repository: Repository id.
        credentials: Optional :class:`StoreCredentials`.
        upload_timeout: Per-attempt deadline for uploads, in seconds.
        clear_timeout: Per-attempt deadline for context clears, in seconds.
    """

    def __init__(
        self,
        transport: ResilientTransport,
        base_url: str,
        repository: str,
        credentials: StoreCredentials | None = None,
        *,
        upload_timeout: float = 600.0,
        clear_timeout: float = 120.0,
    ) -> None:
        self._transport = transport
        self.base_url = base_url.rstrip("/")
        self.repository = repository
        self._credentials = credentials or StoreCredentials()
        self.upload_timeout = upload_timeout
        self.clear_timeout = clear_timeout

    @property
    def repository_url(self) -> str:
        return f"{self.base_url}/repositories/{quote(self.repository, safe='')}"

    @property
    def statements_url(self) -> str:
        return f"{self.repository_url}/statements"

    @staticmethod
    def _context_params(context: str | None) -> dict[str, str]:
        context = context.strip() if context else None
        return {"context": f"<{context}>"} if context else {}

    async def _call(
        self,
        method: str,
        url: str,
        *,
        label: str,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        request_headers = {**self._credentials.headers(), **(headers or {})}
        try:
            return await self._transport.request(
                method,
                url,
                headers=request_headers,
                auth=self._credentials.auth(),
                timeout=timeout,
                label=label,
                **kwargs,
            )
        except StoreRejected:
            raise
        except TransportError as exc:
            # Non-retryable statuses come back on the first attempt.
            if exc.status is not None and exc.attempts is None:
                raise StoreRejected(
                    f"Store rejected {label}: HTTP {exc.status}",
                    status=exc.status,
                    body=exc.body,
                    cause=exc,
                ).with_context(url=url, source_name="graphdb") from exc
            raise

    async def upload(self, body: str | bytes, context: str | None = None) -> UploadResult:
        """POST a Turtle document into *context* (insert-only).

        Raises:
            StoreRejected: The store refused the document (e.g. HTTP 400).
            TransportError: Retries exhausted.
        """
        payload = body.encode("utf-8") if isinstance(body, str) else body
        started = time.perf_counter()
        await self._call(
            "POST",
            self.statements_url,
            label="graphdb upload",
            timeout=self.upload_timeout,
            params=self._context_params(context),
            headers={"Content-Type": "text/turtle"},
            content=payload,
        )
        return UploadResult(
            bytes_accepted=len(payload),
            context=context,
            elapsed_seconds=time.perf_counter() - started,
        )

    async def clear_context(self, context: str) -> None:
        """DELETE every statement in *context*."""
        if not context or not context.strip():
            raise ValueError("clear_context requires a non-empty graph context")
        await self._call(
            "DELETE",
            self.statements_url,
            label="graphdb clear",
            timeout=self.clear_timeout,
            params=self._context_params(context),
        )
        logger.info("context_cleared", context=context)

    async def clear_section(self, context: str, section: Section) -> None:
        """Delete what one section published into *context*, keep the rest.

        Streams sharing a chain context reset independently this way; see
        :func:`section_clear_update` for what the section covers.
        """
        if not context or not context.strip():
            raise ValueError("clear_section requires a non-empty graph context")
        await self.update(section_clear_update(context.strip(), section), timeout=self.clear_timeout)
        logger.info("section_cleared", context=context, kind=section.kind)

    async def query(self, sparql: str) -> dict[str, Any]:
        """Run a SPARQL SELECT/ASK and return the JSON results document."""
        response = await self._call(
            "POST",
            self.repository_url,
            label="graphdb query",
            headers={"Accept": "application/sparql-results+json"},
            data={"query": sparql},
        )
        return response.json()

    async def update(self, sparql: str, *, timeout: float | None = None) -> None:
        """Run a SPARQL UPDATE."""
        await self._call(
            "POST",
            self.statements_url,
            label="graphdb update",
            timeout=timeout,
            headers={"Content-Type": "application/sparql-update"},
            content=sparql.encode("utf-8"),
        )


__all__ = [
    "ACCESS_CLIENT_ID_HEADER",
    "ACCESS_CLIENT_SECRET_HEADER",
    "GraphStoreClient",
    "Section",
    "StoreCredentials",
    "UploadResult",
    "section_clear_update",
]
