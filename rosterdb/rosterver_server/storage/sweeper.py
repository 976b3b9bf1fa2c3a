"""
Retention sweeper for tombstoned roster entries.

A removed entry stays as a tombstone so that clients syncing by version
can still observe the removal. Once the tombstone's last journal row is
older than the retention window the entry is deleted for good.

Optionally the sweeper also:
- deletes journal rows of entries that no longer exist (older than the
  window), recording how far it pruned so version deltas below that
  point fall back to a full roster fetch
- deletes groups that have no members left

The sweep runs when the store starts and, when an interval is configured,
from a background loop (SweeperService).

Invariants:
    - Live entries are never purged
    - A tombstone without journal rows is never purged
    - Sweep failures never propagate to the store's caller
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .groups import GroupCatalog
from .items import Subscription
from .journal import Journal

if TYPE_CHECKING:
    from .roster_store import RosterStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one sweep.

    Attributes:
        purged_entries: Tombstoned roster entries deleted
        pruned_journal: Orphaned journal rows deleted
        pruned_groups: Empty groups deleted
    """

    purged_entries: int = 0
    pruned_journal: int = 0
    pruned_groups: int = 0


class RetentionSweeper:
    """Purges tombstones older than the retention window."""

    def __init__(
        self,
        groups: GroupCatalog,
        journal: Journal,
        retention_ms: int,
        prune_orphan_journal: bool = False,
        prune_empty_groups: bool = False,
    ) -> None:
        self.groups = groups
        self.journal = journal
        self.retention_ms = retention_ms
        self.prune_orphan_journal = prune_orphan_journal
        self.prune_empty_groups = prune_empty_groups

    def sweep(self, conn: sqlite3.Connection, now_ms: int) -> SweepResult:
        """Run one sweep inside the caller's transaction."""
        cutoff_ms = now_ms - self.retention_ms
        result = SweepResult()

        cursor = conn.execute(
            """
            DELETE FROM roster_entries
            WHERE (subscription & ?) != 0
            AND (
                SELECT MAX(j.ts_ms) FROM journal j
                WHERE j.owner_id = roster_entries.owner_id
                AND j.contact_id = roster_entries.contact_id
            ) < ?
            """,
            (int(Subscription.REMOVED), cutoff_ms),
        )
        result.purged_entries = cursor.rowcount

        if self.prune_orphan_journal:
            result.pruned_journal = self.journal.prune_orphans(conn, cutoff_ms)
        if self.prune_empty_groups:
            result.pruned_groups = self.groups.prune_empty(conn)

        return result


class SweeperService:
    """Runs the store's sweep periodically.

    Example:
        >>> service = SweeperService(store, interval_seconds=3600)
        >>> await service.start()  # Runs until stopped
    """

    def __init__(self, store: RosterStore, interval_seconds: float) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self._running = False
        self._sweep_count = 0

    @property
    def sweep_count(self) -> int:
        return self._sweep_count

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweeper loop."""
        if self._running:
            logger.warning("Sweeper already running")
            return

        self._running = True
        logger.info(
            "Starting retention sweeper",
            extra={"interval_seconds": self.interval_seconds},
        )

        try:
            while self._running:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                # SQLite calls block; keep them off the event loop
                await asyncio.to_thread(self.store.sweep)
                self._sweep_count += 1

        except asyncio.CancelledError:
            logger.info("Sweeper cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the sweeper loop."""
        self._running = False
        logger.info("Stopping retention sweeper")
