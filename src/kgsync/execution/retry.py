"""Retry policy with exponential backoff, jitter, and one async wrapper.

Every network call in kgsync (store uploads, query API, event index,
JSON-RPC reads) goes through :func:`retry_async`, which owns the whole
attempt / classify / backoff cycle so call sites only describe *one*
attempt.

Example:
    >>> policy = RetryPolicy(max_attempts=4, base_delay=0.75, max_delay=20.0)
    >>> 0.75 <= compute_delay(policy, 0) <= 1.0
    True
    >>> response = await retry_async(lambda: transport.attempt(request), policy)
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from kgsync.core.errors import SyncError, TransportError, is_retryable
from kgsync.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504, 522, 524})


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class RetryPolicy:
    """Process-wide retry configuration, built once from settings.

    Delay after failed attempt ``n`` (zero-based)::

        min(max_delay, base_delay * 2**n) + uniform(0, jitter)

    A ``retry_after`` hint on the error replaces the exponential term and is
    capped at ``max_delay``.

    Attributes:
        timeout: Seconds allowed for a single attempt
        max_attempts: Total attempts, including the first
        base_delay: Delay after the first failure, before jitter
        max_delay: Cap on the exponential term
        jitter: Upper bound of the uniform random addend
        retryable_statuses: HTTP statuses worth retrying
    """

    timeout: float = 60.0
    max_attempts: int = 4
    base_delay: float = 0.75
    max_delay: float = 20.0
    jitter: float = 0.25
    retryable_statuses: frozenset[int] = field(default=RETRYABLE_STATUSES)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")

    def with_timeout(self, timeout: float) -> RetryPolicy:
        """Copy of this policy with a different per-attempt timeout."""
        return RetryPolicy(
            timeout=timeout,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter=self.jitter,
            retryable_statuses=self.retryable_statuses,
        )


def compute_delay(
    policy: RetryPolicy,
    attempt: int,
    *,
    retry_after: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait after zero-based *attempt* failed."""
    if retry_after is not None and retry_after >= 0:
        base = min(policy.max_delay, retry_after)
    else:
        base = min(policy.max_delay, policy.base_delay * (2 ** attempt))
    jitter = (rng or random).uniform(0, policy.jitter) if policy.jitter > 0 else 0.0
    return base + jitter


@dataclass
class RetryState:
    """Attempt bookkeeping for one :func:`retry_async` call."""

    policy: RetryPolicy
    attempt: int = field(default=0, init=False)
    last_error: BaseException | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, BaseException, datetime]] = field(default_factory=list, init=False)

    def record_failure(self, error: BaseException) -> None:
        self.errors.append((self.attempt, error, utcnow()))
        self.last_error = error

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.policy.max_attempts

    @property
    def elapsed_seconds(self) -> float:
        return (utcnow() - self.started_at).total_seconds()


def _exhausted_error(state: RetryState, error: BaseException, label: str | None) -> TransportError:
    status = getattr(error, "status", None)
    message = getattr(error, "message", None) or str(error) or type(error).__name__
    exhausted = TransportError(
        f"{label or 'request'} failed after {state.attempt} attempts: {message}",
        status=status,
        body=getattr(error, "body", None),
        attempts=state.attempt,
        cause=error,
    )
    if isinstance(error, SyncError):
        exhausted.context.url = error.context.url
        exhausted.context.source_name = error.context.source_name
    return exhausted


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    classify: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: random.Random | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    label: str | None = None,
) -> T:
    """Run *fn* until it succeeds, fails non-retryably, or the budget runs out.

    Args:
        fn: Zero-argument coroutine factory performing one attempt.
        policy: Attempt budget and backoff parameters.
        classify: Returns True for errors worth retrying.
        sleep: Backoff sleep (injected in tests).
        rng: Jitter source (injected in tests).
        on_retry: Called with ``(attempt, error, delay)`` before each sleep.
        label: Short name of the call for log lines and error messages.

    Returns:
        Whatever *fn* returns on the first successful attempt.

    Raises:
        TransportError: When a retryable failure persists through
            ``policy.max_attempts`` attempts.
        Exception: Any non-retryable error from *fn*, unchanged.
    """
    state = RetryState(policy)
    while True:
        state.attempt += 1
        try:
            return await fn()
        except Exception as exc:
            state.record_failure(exc)
            if not classify(exc):
                raise
            if state.exhausted:
                logger.error(
                    "retry_exhausted",
                    call=label,
                    attempts=state.attempt,
                    elapsed=round(state.elapsed_seconds, 3),
                    error=str(exc),
                )
                raise _exhausted_error(state, exc, label) from exc

            delay = compute_delay(
                policy,
                state.attempt - 1,
                retry_after=getattr(exc, "retry_after", None),
                rng=rng,
            )
            logger.warning(
                "retry_scheduled",
                call=label,
                attempt=state.attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error=str(exc),
            )
            if on_retry:
                on_retry(state.attempt, exc, delay)
            await sleep(delay)


def with_retry(
    policy: RetryPolicy,
    *,
    classify: Callable[[BaseException], bool] = is_retryable,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of :func:`retry_async` for coroutine functions.

    Example:
        >>> @with_retry(RetryPolicy(max_attempts=3))
        ... async def fetch_page(cursor):
        ...     return await client.fetch(cursor)
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_async(
                lambda: func(*args, **kwargs),
                policy,
                classify=classify,
                label=func.__qualname__,
            )

        return wrapper

    return decorator


__all__ = [
    "RETRYABLE_STATUSES",
    "RetryPolicy",
    "RetryState",
    "compute_delay",
    "retry_async",
    "with_retry",
]
