"""Process-wide settings for kgsync.

One validated settings object is built at startup and passed by reference
into every component; nothing reads the environment after that.

Manifesto:
    - **Pydantic validation:** Type-checked at startup, not mid-sync
    - **Environment-driven:** ``KGSYNC_*`` env vars and a ``.env`` file
    - **Fail fast:** Missing credentials raise ``ConfigurationMissing``
      before any network call is made

Examples:
    >>> settings = load_settings()
    >>> settings.require("store_base_url", "subgraph_url")
    >>> policy = settings.retry_policy()

Tags:
    settings, configuration, pydantic, environment, kgsync
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from kgsync.core.errors import ConfigurationMissing

if TYPE_CHECKING:
    from kgsync.execution.retry import RetryPolicy


class SyncSettings(BaseSettings):
    """kgsync configuration.

    Fields
    ──────
    store_*        : Triple store endpoint, repository and credentials
    chunk_bytes    : Upload byte budget per chunk
    http_*         : Resilient transport policy
    uaid_chain_id  : Chain id paired with ``uaid:aid:`` identifiers
    chain_id       : Chain whose event index feeds the feedback stream
    query_api_*    : Relational query API (agent registry rows)
    subgraph_url   : Event index GraphQL endpoint
    rpc_url        : JSON-RPC endpoint for account reads
    cursor_db_path : SQLite file holding stream cursors
    """

    model_config = SettingsConfigDict(
        env_prefix="KGSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Triple store ─────────────────────────────────────────────
    store_base_url: str | None = Field(default=None)
    store_repository: str = Field(default="agentkg")
    store_username: str | None = Field(default=None)
    store_password: SecretStr | None = Field(default=None)
    store_access_client_id: str | None = Field(default=None)
    store_access_client_secret: SecretStr | None = Field(default=None)
    store_upload_timeout: float = Field(default=600.0, gt=0)
    chunk_bytes: int = Field(default=2_500_000)

    # ── Resilient transport ──────────────────────────────────────
    http_timeout: float = Field(default=60.0, gt=0)
    http_max_attempts: int = Field(default=4, ge=1)
    http_base_delay: float = Field(default=0.75, ge=0)
    http_max_delay: float = Field(default=20.0, ge=0)
    http_jitter: float = Field(default=0.25, ge=0)
    http_rate_per_second: float | None = Field(default=None, gt=0)

    # ── Identifiers ──────────────────────────────────────────────
    uaid_chain_id: int | None = Field(default=295, ge=0)
    chain_id: int | None = Field(default=None, ge=0)
    id_base: str = Field(default="https://www.agentictrust.io/id")
    graph_base: str = Field(default="https://www.agentictrust.io/graph/data")

    # ── Upstream sources ─────────────────────────────────────────
    query_api_url: str | None = Field(default=None)
    query_api_token: SecretStr | None = Field(default=None)
    subgraph_url: str | None = Field(default=None)
    rpc_url: str | None = Field(default=None)
    page_size: int = Field(default=500, ge=1)

    # ── Cursor persistence ───────────────────────────────────────
    cursor_db_path: Path = Field(default=Path("data/cursors.db"))

    # ── Observability ────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    json_logs: bool | None = Field(default=None)

    def require(self, *names: str) -> None:
        """Raise ``ConfigurationMissing`` naming every unset field in *names*."""
        missing = [n for n in names if getattr(self, n, None) in (None, "")]
        if missing:
            env_names = ", ".join(f"KGSYNC_{n.upper()}" for n in missing)
            raise ConfigurationMissing(
                f"Missing required configuration: {env_names}",
                missing=missing,
            )

    def retry_policy(self, *, timeout: float | None = None) -> RetryPolicy:
        """Build the process-wide retry policy from the ``http_*`` fields."""
        from kgsync.execution.retry import RetryPolicy

        return RetryPolicy(
            timeout=timeout if timeout is not None else self.http_timeout,
            max_attempts=self.http_max_attempts,
            base_delay=self.http_base_delay,
            max_delay=self.http_max_delay,
            jitter=self.http_jitter,
        )


def load_settings(**overrides: Any) -> SyncSettings:
    """Construct settings once, translating validation failures.

    Raises:
        ConfigurationMissing: If any field fails validation.
    """
    try:
        return SyncSettings(**overrides)
    except ValidationError as exc:
        fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
        raise ConfigurationMissing(
            f"Invalid configuration: {', '.join(fields)}",
            missing=fields,
            cause=exc,
        ) from exc


__all__ = ["SyncSettings", "load_settings"]
