"""
Configuration for the roster store.

Uses pydantic-settings for environment variable loading. Every setting
can be given as ROSTER_<NAME>, e.g. ROSTER_DATABASE=/var/lib/roster.sqlite.

Invariants:
    - The store receives its settings at construction, never from globals
    - An empty database path means "not configured" and is fatal at startup

How to change safely:
    - Add new settings with defaults that keep current behaviour
    - Keep retention defaults conservative; purged tombstones cannot be replayed
"""

from __future__ import annotations

import logging

from pydantic import Field
from pydantic_settings import BaseSettings

from .errors import NotConfiguredError

logger = logging.getLogger(__name__)

LOG_FORMATS = ("json", "text")


class StoreSettings(BaseSettings):
    """Roster store configuration loaded from environment."""

    # SQLite
    database: str = Field(default="", description="Path of the roster SQLite file")
    wal_mode: bool = Field(default=True, description="Enable SQLite WAL journal mode")
    busy_timeout_ms: int = Field(default=5000, description="SQLite busy timeout")

    # Retention
    retention_days: float = Field(
        default=3.0, description="Age after which tombstoned entries are purged"
    )
    sweep_on_startup: bool = Field(default=True, description="Run the sweeper when opening")
    sweep_interval_seconds: int = Field(
        default=0, description="Periodic sweep interval (0=startup only)"
    )
    prune_orphan_journal: bool = Field(
        default=False, description="Also delete journal rows of purged entries"
    )
    prune_empty_groups: bool = Field(
        default=False, description="Also delete groups without members"
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json, text)")

    model_config = {"env_prefix": "ROSTER_"}

    @property
    def retention_ms(self) -> int:
        """Retention window in milliseconds."""
        return int(self.retention_days * 86400 * 1000)

    def validate_settings(self) -> None:
        """Validate configuration consistency.

        Raises:
            NotConfiguredError: If no database path is set.
            ValueError: If a setting is out of range.
        """
        if not self.database:
            raise NotConfiguredError("No 'database' configured (set ROSTER_DATABASE)")
        if self.retention_days < 0:
            raise ValueError("ROSTER_RETENTION_DAYS must not be negative")
        if self.sweep_interval_seconds < 0:
            raise ValueError("ROSTER_SWEEP_INTERVAL_SECONDS must not be negative")
        if self.busy_timeout_ms < 0:
            raise ValueError("ROSTER_BUSY_TIMEOUT_MS must not be negative")
        if self.log_format not in LOG_FORMATS:
            raise ValueError(
                f"Invalid ROSTER_LOG_FORMAT '{self.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            f"Loaded SQLite roster storage using file '{self.database}'",
            extra={
                "database": self.database,
                "wal_mode": self.wal_mode,
                "retention_days": self.retention_days,
                "sweep_on_startup": self.sweep_on_startup,
                "sweep_interval_seconds": self.sweep_interval_seconds,
                "prune_orphan_journal": self.prune_orphan_journal,
                "prune_empty_groups": self.prune_empty_groups,
            },
        )
