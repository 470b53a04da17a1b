"""
Resilient HTTP transport shared by every upstream and downstream call.

Wraps an ``httpx.AsyncClient`` so that each call runs under a per-attempt
deadline, is classified as retryable or not, and is retried with
exponential backoff and jitter through :func:`retry_async`.

Manifesto:
    Uploads to the triple store and pages from the upstream sources fail
    in boring, transient ways: gateway timeouts, 429s, dropped
    connections.  The transport absorbs those so the sync loop only ever
    sees a success or a terminal :class:`TransportError`.

    - **Per-attempt deadline:** ``asyncio.timeout(policy.timeout)``
    - **Status classification:** 429/5xx/522/524 retry, everything else fails fast
    - **Network classification:** timeouts, resets and disconnects retry
    - **Retry-After honored:** Overrides the exponential term, capped at ``max_delay``
    - **Bounded error bodies:** Response text is truncated to 1000 characters

Architecture:
    ::

        send(request)
          │
          ▼
        retry_async(attempt, policy) ──────────────┐
          │                                        │ TransientTransportError
          ▼                                        │ → sleep(backoff) → again
        attempt(request)                           │
          ├─ limiter.acquire()                     │
          ├─ async with asyncio.timeout(t):        │
          │     client.send(request)               │
          ├─ 2xx            → return response      │
          ├─ retryable 4xx/5xx ────────────────────┤
          ├─ timeout / reset / disconnect ─────────┘
          └─ other          → TransportError (no retry)

Examples:
    >>> async with ResilientTransport.create(policy) as transport:
    ...     response = await transport.request("GET", "https://example.org/health")

Tags:
    http, httpx, retry, timeout, backoff, transport, kgsync
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from kgsync.core.errors import TransientTransportError, TransportError
from kgsync.core.logging import get_logger
from kgsync.execution.rate_limit import TokenBucketLimiter
from kgsync.execution.retry import RetryPolicy, retry_async

logger = get_logger(__name__)

MAX_ERROR_BODY = 1000

_RETRYABLE_HTTPX_ERRORS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)

_RETRYABLE_MESSAGES = (
    "fetch failed",
    "connect timeout",
    "socket hang up",
    "other side closed",
    "server disconnected",
    "connection reset",
    "econnreset",
    "etimedout",
    "eai_again",
    "enotfound",
    "econnrefused",
)


def is_retryable_network_error(exc: BaseException) -> bool:
    """True for transport-level failures that may succeed on retry."""
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, _RETRYABLE_HTTPX_ERRORS):
        return True
    message = str(exc).lower()
    return any(pattern in message for pattern in _RETRYABLE_MESSAGES)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - (now or datetime.now(UTC))).total_seconds()
    return max(0.0, seconds)


def truncate_body(text: str | None, limit: int = MAX_ERROR_BODY) -> str:
    return (text or "")[:limit]


class ResilientTransport:
    """Single HTTP call primitive with timeout, retry and classification.

    Args:
        client: Shared ``httpx.AsyncClient``; the transport does not own it
            unless built with :meth:`create`.
        policy: Process-wide retry policy.
        limiter: Optional token bucket shared across streams.
        sleep: Backoff sleep (injected in tests).
        rng: Jitter source (injected in tests).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy,
        *,
        limiter: TokenBucketLimiter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self.policy = policy
        self._limiter = limiter
        self._sleep = sleep
        self._rng = rng
        self._owns_client = False

    @classmethod
    def create(
        cls,
        policy: RetryPolicy,
        *,
        limiter: TokenBucketLimiter | None = None,
        **client_kwargs: Any,
    ) -> ResilientTransport:
        """Build a transport that owns (and closes) its own client."""
        # Deadlines come from asyncio.timeout per attempt, not from httpx.
        client_kwargs.setdefault("timeout", None)
        transport = cls(httpx.AsyncClient(**client_kwargs), policy, limiter=limiter)
        transport._owns_client = True
        return transport

    async def __aenter__(self) -> ResilientTransport:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- single attempt ------------------------------------------------------

    async def attempt(
        self,
        request: httpx.Request,
        *,
        timeout: float | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.Response:
        """Perform exactly one classified attempt.

        Raises:
            TransientTransportError: Retryable status or network failure.
            TransportError: Anything else that is not a 2xx.
        """
        url = str(request.url)
        deadline = timeout if timeout is not None else self.policy.timeout
        send_kwargs: dict[str, Any] = {"auth": auth} if auth is not None else {}
        if self._limiter is not None:
            await self._limiter.acquire(sleep=self._sleep)

        try:
            async with asyncio.timeout(deadline):
                response = await self._client.send(request, **send_kwargs)
        except TimeoutError as exc:
            raise TransientTransportError(
                f"{request.method} {url} timed out after {deadline}s", cause=exc
            ).with_context(url=url) from exc
        except httpx.HTTPError as exc:
            message = f"{request.method} {url} failed: {type(exc).__name__}: {exc}"
            if is_retryable_network_error(exc):
                raise TransientTransportError(message, cause=exc).with_context(url=url) from exc
            raise TransportError(message, cause=exc).with_context(url=url) from exc

        if response.is_success:
            return response

        status = response.status_code
        body = truncate_body(response.text)
        message = f"HTTP {status} from {request.method} {url}"
        if status in self.policy.retryable_statuses:
            raise TransientTransportError(
                message,
                status=status,
                body=body,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            ).with_context(url=url)
        raise TransportError(message, status=status, body=body).with_context(url=url)

    # -- retried call --------------------------------------------------------

    async def send(
        self,
        request: httpx.Request,
        *,
        timeout: float | None = None,
        auth: httpx.Auth | None = None,
        label: str | None = None,
    ) -> httpx.Response:
        """Send *request*, retrying transient failures per the policy.

        Raises:
            TransportError: After the attempt budget is exhausted, or
                immediately for a non-retryable failure.
        """
        return await retry_async(
            lambda: self.attempt(request, timeout=timeout, auth=auth),
            self.policy,
            sleep=self._sleep,
            rng=self._rng,
            label=label or f"{request.method} {request.url.host}{request.url.path}",
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        timeout: float | None = None,
        auth: httpx.Auth | None = None,
        label: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Build a request with the underlying client and :meth:`send` it."""
        request = self._client.build_request(method, url, **kwargs)
        return await self.send(request, timeout=timeout, auth=auth, label=label)


__all__ = [
    "MAX_ERROR_BODY",
    "ResilientTransport",
    "is_retryable_network_error",
    "parse_retry_after",
    "truncate_body",
]
