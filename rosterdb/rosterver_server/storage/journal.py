"""
Roster journal and the roster view.

The journal is an append-only log of every mutation applied to an
(owner, contact) pair. Its AUTOINCREMENT entry number is the roster
version: the version of an entry is the highest journal entry of its pair,
and the highest entry overall is the server-wide high-water mark.

The roster view is the only write path into roster_entries. Each intent
changes the live table and appends the journal row in the caller's
transaction:

    add-item      INSERT row                       journal "INSERT <name>, <sub>"
    update-item   UPDATE name/subscription         journal "UPDATE <old name> <old sub>"
    remove-item   live row:  set tombstone bit     journal "DELETE <old name> <old sub>"
                  tombstone: physical delete       no journal row
    group change  (no roster row change)           journal "GRPADD <g>" / "GRPDEL <g>"

Group changes made together with an item intent are folded into the item's
journal row, so one operation on a pair always yields exactly one new
version.

Invariants:
    - Journal rows are never updated
    - Journal rows are only deleted by the optional orphan pruning of the
      retention sweeper, which records how far it pruned
    - Entry numbers are never reused
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from ..errors import InconsistentStateError
from .items import JournalEntry, Subscription

logger = logging.getLogger(__name__)

NULL_NAME = "<NULL>"


def _describe_name(name: str | None) -> str:
    return name if name is not None else NULL_NAME


@dataclass
class RosterRow:
    """One row of the roster view."""

    owner_id: int
    contact_id: int
    owner: str
    jid: str
    name: str | None
    subscription: int
    version: int

    @property
    def removed(self) -> bool:
        return bool(self.subscription & Subscription.REMOVED)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RosterRow:
        return cls(
            owner_id=row["owner_id"],
            contact_id=row["contact_id"],
            owner=row["owner"],
            jid=row["jid"],
            name=row["name"],
            subscription=row["subscription"],
            version=row["version"],
        )


class Journal:
    """Append-only mutation log providing the version clock."""

    def __init__(self, now_ms: Callable[[], int]) -> None:
        """Initialize the journal.

        Args:
            now_ms: Clock returning the current time in Unix ms
        """
        self._now_ms = now_ms

    def append(
        self,
        conn: sqlite3.Connection,
        owner_id: int,
        contact_id: int,
        operation: str,
    ) -> int:
        """Append a journal row and return its entry number."""
        cursor = conn.execute(
            "INSERT INTO journal (owner_id, contact_id, ts_ms, operation) VALUES (?, ?, ?, ?)",
            (owner_id, contact_id, self._now_ms(), operation),
        )
        return cursor.lastrowid

    def high_water_mark(self, conn: sqlite3.Connection) -> int:
        """Highest entry number ever assigned, including pruned ones."""
        row = conn.execute(
            "SELECT seq FROM sqlite_sequence WHERE name = 'journal'"
        ).fetchone()
        return row[0] if row else 0

    def entries(
        self, conn: sqlite3.Connection, owner_id: int, contact_id: int
    ) -> list[JournalEntry]:
        cursor = conn.execute(
            """
            SELECT j.entry, o.address AS owner, c.address AS contact, j.ts_ms, j.operation
            FROM journal j
            INNER JOIN identities o ON o.id = j.owner_id
            INNER JOIN identities c ON c.id = j.contact_id
            WHERE j.owner_id = ? AND j.contact_id = ?
            ORDER BY j.entry
            """,
            (owner_id, contact_id),
        )
        return [
            JournalEntry(
                entry=row["entry"],
                owner=row["owner"],
                contact=row["contact"],
                timestamp=row["ts_ms"],
                operation=row["operation"],
            )
            for row in cursor.fetchall()
        ]

    def has_orphans_after(self, conn: sqlite3.Connection, owner_id: int, version: int) -> bool:
        """True if a journal row newer than ``version`` belongs to a purged entry."""
        row = conn.execute(
            """
            SELECT 1 FROM journal j
            WHERE j.owner_id = ? AND j.entry > ?
            AND NOT EXISTS (
                SELECT 1 FROM roster_entries r
                WHERE r.owner_id = j.owner_id AND r.contact_id = j.contact_id
            )
            LIMIT 1
            """,
            (owner_id, version),
        ).fetchone()
        return row is not None

    def pruned_through(self, conn: sqlite3.Connection) -> int:
        """Highest entry number removed by orphan pruning (0 if never pruned)."""
        row = conn.execute(
            "SELECT value FROM store_meta WHERE key = 'journal_pruned_through'"
        ).fetchone()
        return row[0] if row else 0

    def prune_orphans(self, conn: sqlite3.Connection, cutoff_ms: int) -> int:
        """Delete journal rows older than ``cutoff_ms`` whose entry is gone.

        Returns:
            Number of journal rows deleted
        """
        row = conn.execute(
            """
            SELECT MAX(j.entry) FROM journal j
            WHERE j.ts_ms < ?
            AND NOT EXISTS (
                SELECT 1 FROM roster_entries r
                WHERE r.owner_id = j.owner_id AND r.contact_id = j.contact_id
            )
            """,
            (cutoff_ms,),
        ).fetchone()
        if row is None or row[0] is None:
            return 0

        cursor = conn.execute(
            """
            DELETE FROM journal
            WHERE ts_ms < ?
            AND NOT EXISTS (
                SELECT 1 FROM roster_entries r
                WHERE r.owner_id = journal.owner_id AND r.contact_id = journal.contact_id
            )
            """,
            (cutoff_ms,),
        )
        conn.execute(
            """
            INSERT INTO store_meta (key, value) VALUES ('journal_pruned_through', ?)
            ON CONFLICT(key) DO UPDATE SET value = MAX(value, excluded.value)
            """,
            (row[0],),
        )
        return cursor.rowcount


class RosterView:
    """Read model and write intents over roster_entries + journal."""

    def __init__(self, journal: Journal) -> None:
        self.journal = journal

    def get(self, conn: sqlite3.Connection, owner_id: int, contact_id: int) -> RosterRow | None:
        row = conn.execute(
            "SELECT * FROM roster WHERE owner_id = ? AND contact_id = ?",
            (owner_id, contact_id),
        ).fetchone()
        return RosterRow.from_row(row) if row else None

    def rows(
        self,
        conn: sqlite3.Connection,
        owner_id: int,
        include_removed: bool = True,
        since: int | None = None,
    ) -> list[RosterRow]:
        """Return the owner's entries ordered by (version, contact).

        Args:
            conn: Database connection
            owner_id: Owner identity id
            include_removed: Whether tombstoned entries are returned
            since: Only return entries whose version is greater than this
        """
        query = "SELECT * FROM roster WHERE owner_id = ?"
        params: list[int] = [owner_id]
        if not include_removed:
            query += " AND (subscription & ?) = 0"
            params.append(int(Subscription.REMOVED))
        if since is not None:
            query += " AND version > ?"
            params.append(since)
        query += " ORDER BY version, contact_id"

        return [RosterRow.from_row(row) for row in conn.execute(query, params).fetchall()]

    def owner_version(self, conn: sqlite3.Connection, owner_id: int) -> int:
        row = conn.execute(
            "SELECT MAX(version) FROM roster WHERE owner_id = ?", (owner_id,)
        ).fetchone()
        return row[0] or 0

    def _record(
        self,
        conn: sqlite3.Connection,
        owner_id: int,
        contact_id: int,
        operation: str,
        group_ops: Sequence[str],
    ) -> int:
        return self.journal.append(conn, owner_id, contact_id, "; ".join([operation, *group_ops]))

    def add_item(
        self,
        conn: sqlite3.Connection,
        owner_id: int,
        contact_id: int,
        name: str | None,
        subscription: int,
        group_ops: Sequence[str] = (),
    ) -> int:
        """Insert a new roster entry. Returns the new version."""
        entry = self._record(
            conn,
            owner_id,
            contact_id,
            f"INSERT {_describe_name(name)}, {subscription}",
            group_ops,
        )
        conn.execute(
            """
            INSERT INTO roster_entries (owner_id, contact_id, name, subscription)
            VALUES (?, ?, ?, ?)
            """,
            (owner_id, contact_id, name, subscription),
        )
        return entry

    def restore_item(
        self,
        conn: sqlite3.Connection,
        existing: RosterRow,
        name: str | None,
        subscription: int,
        group_ops: Sequence[str] = (),
    ) -> int:
        """Write an add over a tombstoned entry. Returns the new version."""
        cursor = conn.execute(
            """
            UPDATE roster_entries SET name = ?, subscription = ?
            WHERE owner_id = ? AND contact_id = ? AND (subscription & ?) != 0
            """,
            (name, subscription, existing.owner_id, existing.contact_id, int(Subscription.REMOVED)),
        )
        if cursor.rowcount != 1:
            raise InconsistentStateError(
                "Tombstoned roster entry vanished during update",
                owner=existing.owner,
                contact=existing.jid,
            )
        return self._record(
            conn,
            existing.owner_id,
            existing.contact_id,
            f"INSERT {_describe_name(name)}, {subscription}",
            group_ops,
        )

    def update_item(
        self,
        conn: sqlite3.Connection,
        existing: RosterRow,
        name: str | None,
        subscription: int,
        group_ops: Sequence[str] = (),
    ) -> int:
        """Change name/subscription of a live entry. Returns the new version.

        The journal row records the values being replaced.
        """
        cursor = conn.execute(
            """
            UPDATE roster_entries SET name = ?, subscription = ?
            WHERE owner_id = ? AND contact_id = ? AND (subscription & ?) = 0
            """,
            (name, subscription, existing.owner_id, existing.contact_id, int(Subscription.REMOVED)),
        )
        if cursor.rowcount != 1:
            raise InconsistentStateError(
                "Roster entry vanished or was removed during update",
                owner=existing.owner,
                contact=existing.jid,
            )
        return self._record(
            conn,
            existing.owner_id,
            existing.contact_id,
            f"UPDATE {_describe_name(existing.name)} {existing.subscription}",
            group_ops,
        )

    def remove_item(
        self,
        conn: sqlite3.Connection,
        existing: RosterRow,
        group_ops: Sequence[str] = (),
    ) -> int | None:
        """Two-phase delete.

        A live entry gets the tombstone bit and a journal row; a tombstoned
        entry is deleted for good without one.

        Returns:
            The new version, or None if the entry was physically deleted
        """
        if existing.removed:
            conn.execute(
                "DELETE FROM roster_entries WHERE owner_id = ? AND contact_id = ?",
                (existing.owner_id, existing.contact_id),
            )
            return None

        cursor = conn.execute(
            """
            UPDATE roster_entries SET subscription = subscription | ?
            WHERE owner_id = ? AND contact_id = ? AND (subscription & ?) = 0
            """,
            (
                int(Subscription.REMOVED),
                existing.owner_id,
                existing.contact_id,
                int(Subscription.REMOVED),
            ),
        )
        if cursor.rowcount != 1:
            raise InconsistentStateError(
                "Roster entry vanished during remove",
                owner=existing.owner,
                contact=existing.jid,
            )
        return self._record(
            conn,
            existing.owner_id,
            existing.contact_id,
            f"DELETE {_describe_name(existing.name)} {existing.subscription}",
            group_ops,
        )

    def groups_changed(
        self,
        conn: sqlite3.Connection,
        owner_id: int,
        contact_id: int,
        group_ops: Iterable[str],
    ) -> int | None:
        """Journal group membership changes of a pair without an item intent.

        Returns:
            The new version, or None if there was nothing to record
        """
        group_ops = list(group_ops)
        if not group_ops:
            return None
        return self.journal.append(conn, owner_id, contact_id, "; ".join(group_ops))


def group_add_op(name: str) -> str:
    return f"GRPADD {name}"


def group_del_op(name: str) -> str:
    return f"GRPDEL {name}"
