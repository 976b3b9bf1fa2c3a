"""
Unit tests for store configuration and error types.
"""

import pytest

from rosterdb.rosterver_server.config import StoreSettings
from rosterdb.rosterver_server.errors import (
    IdentityResolutionError,
    InconsistentStateError,
    NotConfiguredError,
    RosterStoreError,
    StorageFailure,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("ROSTER_DATABASE", "ROSTER_RETENTION_DAYS", "ROSTER_LOG_FORMAT"):
        monkeypatch.delenv(name, raising=False)


class TestStoreSettings:
    """Tests for StoreSettings."""

    def test_defaults(self):
        settings = StoreSettings()
        assert settings.database == ""
        assert settings.wal_mode is True
        assert settings.retention_days == 3.0
        assert settings.sweep_on_startup is True
        assert settings.sweep_interval_seconds == 0
        assert settings.prune_orphan_journal is False
        assert settings.prune_empty_groups is False

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("ROSTER_DATABASE", "/tmp/roster.sqlite")
        monkeypatch.setenv("ROSTER_RETENTION_DAYS", "0.5")

        settings = StoreSettings()
        assert settings.database == "/tmp/roster.sqlite"
        assert settings.retention_days == 0.5

    def test_retention_ms(self):
        assert StoreSettings(retention_days=3).retention_ms == 259_200_000
        assert StoreSettings(retention_days=0).retention_ms == 0

    def test_missing_database(self):
        with pytest.raises(NotConfiguredError) as exc_info:
            StoreSettings().validate_settings()
        assert exc_info.value.code == "NOT_CONFIGURED"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"retention_days": -1},
            {"sweep_interval_seconds": -5},
            {"busy_timeout_ms": -1},
            {"log_format": "xml"},
        ],
    )
    def test_invalid_values(self, overrides):
        settings = StoreSettings(database="/tmp/roster.sqlite", **overrides)
        with pytest.raises(ValueError):
            settings.validate_settings()

    def test_valid(self):
        StoreSettings(database="/tmp/roster.sqlite", log_format="text").validate_settings()


class TestErrors:
    """Tests for the error hierarchy."""

    def test_hierarchy(self):
        for error in (
            NotConfiguredError(),
            StorageFailure("boom", operation="upsert"),
            IdentityResolutionError("bad", address=""),
            InconsistentStateError("gone", owner="u@x", contact="c@x"),
        ):
            assert isinstance(error, RosterStoreError)

    def test_context(self):
        error = StorageFailure("boom", operation="upsert")
        assert error.code == "STORAGE_FAILURE"
        assert error.operation == "upsert"
        assert error.details == {"operation": "upsert"}
        assert str(error) == "boom"

        error = InconsistentStateError("gone", owner="u@x", contact="c@x")
        assert error.details == {"owner": "u@x", "contact": "c@x"}

    def test_base_defaults(self):
        error = RosterStoreError("oops")
        assert error.code == "ROSTER_ERROR"
        assert error.details == {}
