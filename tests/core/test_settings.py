"""Tests for kgsync.core.settings module.

Covers:
- SyncSettings defaults
- KGSYNC_* environment overrides
- require() naming every missing field
- load_settings() translating validation failures
- retry_policy() construction
"""

from pathlib import Path

import pytest

from kgsync.core.errors import ConfigurationMissing
from kgsync.core.settings import SyncSettings, load_settings
from kgsync.execution.retry import RetryPolicy


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """No ambient KGSYNC_* variables or .env file leak into these tests."""
    import os

    for key in list(os.environ):
        if key.startswith("KGSYNC_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


class TestSyncSettingsDefaults:
    def test_store_defaults(self):
        s = SyncSettings()
        assert s.store_base_url is None
        assert s.store_repository == "agentkg"
        assert s.store_upload_timeout == 600.0

    def test_chunk_budget_default(self):
        assert SyncSettings().chunk_bytes == 2_500_000

    def test_transport_defaults(self):
        s = SyncSettings()
        assert s.http_timeout == 60.0
        assert s.http_max_attempts == 4
        assert s.http_base_delay == 0.75
        assert s.http_max_delay == 20.0
        assert s.http_jitter == 0.25
        assert s.http_rate_per_second is None

    def test_identifier_defaults(self):
        s = SyncSettings()
        assert s.uaid_chain_id == 295
        assert s.chain_id is None

    def test_cursor_path_is_path(self):
        s = SyncSettings()
        assert s.cursor_db_path == Path("data/cursors.db")


class TestSyncSettingsEnvOverride:
    def test_store_url_from_env(self, monkeypatch):
        monkeypatch.setenv("KGSYNC_STORE_BASE_URL", "https://graphdb.example")
        assert SyncSettings().store_base_url == "https://graphdb.example"

    def test_int_coercion_from_env(self, monkeypatch):
        monkeypatch.setenv("KGSYNC_CHAIN_ID", "11155111")
        assert SyncSettings().chain_id == 11155111

    def test_password_is_secret(self, monkeypatch):
        monkeypatch.setenv("KGSYNC_STORE_PASSWORD", "hunter2")
        s = SyncSettings()
        assert s.store_password.get_secret_value() == "hunter2"
        assert "hunter2" not in repr(s)

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("KGSYNC_SUBGRAPH_URL=https://subgraph.example\n")
        assert SyncSettings().subgraph_url == "https://subgraph.example"


class TestRequire:
    def test_passes_when_set(self):
        SyncSettings(store_base_url="https://graphdb.example").require("store_base_url")

    def test_names_every_missing_field(self):
        s = SyncSettings(store_base_url="")
        with pytest.raises(ConfigurationMissing) as exc_info:
            s.require("store_base_url", "subgraph_url", "store_repository")
        assert exc_info.value.missing == ["store_base_url", "subgraph_url"]
        assert "KGSYNC_STORE_BASE_URL" in exc_info.value.message
        assert "KGSYNC_SUBGRAPH_URL" in exc_info.value.message


class TestLoadSettings:
    def test_overrides(self):
        s = load_settings(chunk_bytes=1000)
        assert s.chunk_bytes == 1000

    def test_validation_failure_becomes_configuration_missing(self):
        with pytest.raises(ConfigurationMissing) as exc_info:
            load_settings(http_max_attempts=0)
        assert exc_info.value.missing == ["http_max_attempts"]
        assert exc_info.value.cause is not None

    def test_bad_env_value(self, monkeypatch):
        monkeypatch.setenv("KGSYNC_PAGE_SIZE", "lots")
        with pytest.raises(ConfigurationMissing):
            load_settings()


class TestRetryPolicy:
    def test_built_from_http_fields(self):
        s = SyncSettings(http_max_attempts=3, http_base_delay=1.0, http_jitter=0.0)
        policy = s.retry_policy()
        assert isinstance(policy, RetryPolicy)
        assert policy.max_attempts == 3
        assert policy.base_delay == 1.0
        assert policy.jitter == 0.0
        assert policy.timeout == 60.0

    def test_timeout_override(self):
        assert SyncSettings().retry_policy(timeout=600.0).timeout == 600.0
