"""
Exception types raised by the sync pipeline.

The loop needs exactly one decision per failure: drop the record and keep
going, or abandon the cycle with the cursor where it was.  The split is:

- record-scoped: :class:`InvalidIdentifier`, :class:`InvalidRecord`
- cycle-scoped: :class:`TransportError` (and subclasses),
  :class:`UpstreamError`, :class:`CursorRegression`
- startup: :class:`ConfigurationMissing`

Only :class:`TransientTransportError` is retryable; the transport consumes
it and surfaces a plain :class:`TransportError` once attempts run out.

Example:
    >>> err = TransportError("HTTP 503", status=503).with_context(stream="feedbacks:1")
    >>> err.context.to_dict()
    {'stream': 'feedbacks:1', 'http_status': 503}
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    NETWORK = "NETWORK"
    STORE = "STORE"
    SOURCE = "SOURCE"
    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"
    CURSOR = "CURSOR"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Where a failure happened: stream, collaborator, URL and status.

    Anything else (chunk index, positions) goes in ``metadata`` and is
    flattened into the same dict when logged.
    """

    stream: str | None = None
    source_name: str | None = None
    url: str | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        named = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "metadata" and getattr(self, f.name) is not None
        }
        return {**named, **self.metadata}

    def set(self, key: str, value: Any) -> None:
        if key != "metadata" and key in self.__dataclass_fields__:
            setattr(self, key, value)
        else:
            self.metadata[key] = value


class SyncError(Exception):
    """Root of every kgsync exception.

    Subclasses pick their category and retry flag through class attributes;
    both can be overridden per instance.  ``cause`` is also installed as
    ``__cause__`` so tracebacks show the chain.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.retry_after = retry_after
        self.context = context if context is not None else ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **values: Any) -> SyncError:
        """Record where the error happened and return ``self`` for ``raise``.

        ``raise StoreRejected("HTTP 400").with_context(stream="agents:295", chunk_index=2)``
        """
        for key, value in values.items():
            self.context.set(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        if context := self.context.to_dict():
            data["context"] = context
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# -- dropped per record ------------------------------------------------------


class InvalidIdentifier(SyncError):
    """A UAID or DID is missing its scheme prefix or is malformed."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str, *, value: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.value = value


class InvalidRecord(SyncError):
    default_category = ErrorCategory.VALIDATION


# -- abort the cycle ---------------------------------------------------------


class TransportError(SyncError):
    """An HTTP exchange failed and will not be retried further.

    ``status`` is the last response status, or None when no response
    arrived.  ``body`` holds the start of the response text and
    ``attempts`` how many tries were spent.
    """

    default_category = ErrorCategory.NETWORK

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str | None = None,
        attempts: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.status = status
        self.body = body
        self.attempts = attempts
        if status is not None:
            self.context.http_status = status


class TransientTransportError(TransportError):
    """One attempt failed (timeout, reset, 429, 5xx); another may succeed."""

    default_retryable = True


class StoreRejected(TransportError):
    """GraphDB answered 4xx to an upload, clear or query."""

    default_category = ErrorCategory.STORE


class UpstreamError(SyncError):
    """The source API replied, but its payload reports failure."""

    default_category = ErrorCategory.SOURCE


class CursorRegression(SyncError):
    """A stream's cursor was written with a different position type."""

    default_category = ErrorCategory.CURSOR


# -- startup -----------------------------------------------------------------


class ConfigurationMissing(SyncError):
    default_category = ErrorCategory.CONFIG

    def __init__(self, message: str, *, missing: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.missing = list(missing) if missing else []


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, SyncError) and error.retryable


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SyncError",
    "InvalidIdentifier",
    "InvalidRecord",
    "TransportError",
    "TransientTransportError",
    "StoreRejected",
    "UpstreamError",
    "ConfigurationMissing",
    "CursorRegression",
    "is_retryable",
]
