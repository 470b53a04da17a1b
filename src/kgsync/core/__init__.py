"""kgsync core -- identifiers, cursors, errors, logging and settings.

Architecture::

    errors.py        Structured error hierarchy (SyncError, TransportError)
    logging.py       structlog configuration and context binding
    settings.py      SyncSettings (pydantic-settings, KGSYNC_ prefix)
    identifiers.py   UAID/DID resolution and IRI minting
    watermarks.py    Forward-only per-stream cursors (memory / SQLite)
"""

from kgsync.core.errors import (
    ConfigurationMissing,
    CursorRegression,
    ErrorCategory,
    ErrorContext,
    InvalidIdentifier,
    InvalidRecord,
    StoreRejected,
    SyncError,
    TransientTransportError,
    TransportError,
    UpstreamError,
    is_retryable,
)
from kgsync.core.identifiers import (
    CanonicalIdentifier,
    IdentifierKind,
    IdentifierResolver,
    chain_context,
    iri_encode_segment,
)
from kgsync.core.watermarks import CursorStore, SyncCursor

__all__ = [
    "ConfigurationMissing",
    "CursorRegression",
    "ErrorCategory",
    "ErrorContext",
    "InvalidIdentifier",
    "InvalidRecord",
    "StoreRejected",
    "SyncError",
    "TransientTransportError",
    "TransportError",
    "UpstreamError",
    "is_retryable",
    "CanonicalIdentifier",
    "IdentifierKind",
    "IdentifierResolver",
    "chain_context",
    "iri_encode_segment",
    "CursorStore",
    "SyncCursor",
]
