"""Tests for the retry policy and the async retry wrapper."""

import random

import pytest

from kgsync.core.errors import (
    InvalidIdentifier,
    TransientTransportError,
    TransportError,
)
from kgsync.execution.retry import (
    RETRYABLE_STATUSES,
    RetryPolicy,
    compute_delay,
    retry_async,
    with_retry,
)


class Flaky:
    """Coroutine factory that fails with queued errors, then returns a value."""

    def __init__(self, *errors: BaseException, result: object = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestRetryPolicy:
    """Tests for RetryPolicy defaults and validation."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.timeout == 60.0
        assert policy.max_attempts == 4
        assert policy.base_delay == 0.75
        assert policy.max_delay == 20.0
        assert policy.jitter == 0.25
        assert policy.retryable_statuses == RETRYABLE_STATUSES

    def test_retryable_statuses(self):
        assert RETRYABLE_STATUSES == {429, 500, 502, 503, 504, 522, 524}

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            RetryPolicy(timeout=0)

    def test_with_timeout_copies_everything_else(self):
        policy = RetryPolicy(max_attempts=7, jitter=0.0)
        longer = policy.with_timeout(600.0)
        assert longer.timeout == 600.0
        assert longer.max_attempts == 7
        assert longer.jitter == 0.0
        assert policy.timeout == 60.0


class TestComputeDelay:
    """Tests for the backoff formula."""

    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay=0.75, max_delay=20.0, jitter=0.0)
        assert [compute_delay(policy, n) for n in range(6)] == [0.75, 1.5, 3.0, 6.0, 12.0, 20.0]

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.25)
        rng = random.Random(7)
        for _ in range(50):
            assert 1.0 <= compute_delay(policy, 0, rng=rng) <= 1.25

    def test_jitter_is_reproducible_with_seeded_rng(self):
        policy = RetryPolicy()
        assert compute_delay(policy, 2, rng=random.Random(3)) == compute_delay(
            policy, 2, rng=random.Random(3)
        )

    def test_retry_after_replaces_exponential_term(self):
        policy = RetryPolicy(base_delay=0.75, max_delay=20.0, jitter=0.0)
        assert compute_delay(policy, 0, retry_after=5.0) == 5.0

    def test_retry_after_is_capped(self):
        policy = RetryPolicy(max_delay=20.0, jitter=0.0)
        assert compute_delay(policy, 0, retry_after=3600.0) == 20.0


class TestRetryAsync:
    """Tests for retry_async."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, policy, sleeps):
        fn = Flaky()
        assert await retry_async(fn, policy, sleep=sleeps) == "ok"
        assert fn.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, policy, sleeps):
        fn = Flaky(TransientTransportError("503", status=503), TransientTransportError("503", status=503))
        assert await retry_async(fn, policy, sleep=sleeps) == "ok"
        assert fn.calls == 3
        assert sleeps.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_transport_error(self, policy, sleeps):
        errors = [TransientTransportError("HTTP 503", status=503, body="busy") for _ in range(3)]
        for e in errors:
            e.with_context(url="https://store.test/x")
        fn = Flaky(*errors)

        with pytest.raises(TransportError) as exc_info:
            await retry_async(fn, policy, sleep=sleeps, label="upload")

        err = exc_info.value
        assert type(err) is TransportError
        assert not err.retryable
        assert err.attempts == 3
        assert err.status == 503
        assert err.body == "busy"
        assert err.context.url == "https://store.test/x"
        assert err.cause is errors[-1]
        assert "upload failed after 3 attempts" in err.message
        assert fn.calls == 3
        assert len(sleeps.delays) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_unchanged(self, policy, sleeps):
        original = InvalidIdentifier("bad")
        fn = Flaky(original)
        with pytest.raises(InvalidIdentifier) as exc_info:
            await retry_async(fn, policy, sleep=sleeps)
        assert exc_info.value is original
        assert fn.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_retry_after_hint_is_used(self, policy, sleeps):
        fn = Flaky(TransientTransportError("429", status=429, retry_after=3.0))
        await retry_async(fn, policy, sleep=sleeps)
        assert sleeps.delays == [3.0]

    @pytest.mark.asyncio
    async def test_custom_classifier(self, policy, sleeps):
        fn = Flaky(ValueError("flaky"))
        result = await retry_async(
            fn, policy, sleep=sleeps, classify=lambda e: isinstance(e, ValueError)
        )
        assert result == "ok"

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, policy, sleeps):
        seen = []
        fn = Flaky(TransientTransportError("x"))
        await retry_async(fn, policy, sleep=sleeps, on_retry=lambda a, e, d: seen.append((a, d)))
        assert seen == [(1, 0.5)]

    @pytest.mark.asyncio
    async def test_single_attempt_policy_never_sleeps(self, sleeps):
        policy = RetryPolicy(max_attempts=1, jitter=0.0)
        with pytest.raises(TransportError) as exc_info:
            await retry_async(Flaky(TransientTransportError("x")), policy, sleep=sleeps)
        assert exc_info.value.attempts == 1
        assert sleeps.delays == []


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_decorator(self):
        attempts = {"n": 0}

        @with_retry(RetryPolicy(max_attempts=2, jitter=0.0, base_delay=0.0))
        async def fetch(x):
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise TransientTransportError("reset")
            return x * 2

        assert await fetch(21) == 42
        assert attempts["n"] == 2
