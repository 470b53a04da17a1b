"""kgsync execution -- the resilient call path every network request takes.

ARCHITECTURE
────────────
::

    ResilientTransport.send(request)
      ├── TokenBucketLimiter   ─ optional shared throttle
      ├── asyncio.timeout      ─ per-attempt deadline
      └── retry_async          ─ classify / backoff / jitter
            └── RetryPolicy    ─ built once from SyncSettings
"""

from kgsync.execution.rate_limit import TokenBucketLimiter
from kgsync.execution.retry import RETRYABLE_STATUSES, RetryPolicy, compute_delay, retry_async
from kgsync.execution.transport import ResilientTransport, is_retryable_network_error

__all__ = [
    "RETRYABLE_STATUSES",
    "RetryPolicy",
    "ResilientTransport",
    "TokenBucketLimiter",
    "compute_delay",
    "is_retryable_network_error",
    "retry_async",
]
