"""
Group catalog: per-owner named groups and their members.

Groups are created lazily the first time an owner files a contact under a
name. They are never renamed or merged. Membership rows exist independently
of the roster entry; changing them bumps the contact's version through the
journal (see journal.RosterView).
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable

logger = logging.getLogger(__name__)


class GroupCatalog:
    """Get-or-create group ids and membership queries."""

    def resolve_group(self, conn: sqlite3.Connection, owner_id: int, name: str) -> int:
        """Return the id of the owner's group ``name``, creating it if needed."""
        existing = self._lookup(conn, owner_id, name)
        if existing is not None:
            return existing

        try:
            cursor = conn.execute(
                "INSERT INTO roster_groups (owner_id, name) VALUES (?, ?)",
                (owner_id, name),
            )
        except sqlite3.IntegrityError:
            winner = self._lookup(conn, owner_id, name)
            if winner is None:
                raise
            return winner

        logger.debug(
            "Created roster group",
            extra={"owner_id": owner_id, "group": name, "group_id": cursor.lastrowid},
        )
        return cursor.lastrowid

    def _lookup(self, conn: sqlite3.Connection, owner_id: int, name: str) -> int | None:
        row = conn.execute(
            "SELECT group_id FROM roster_groups WHERE owner_id = ? AND name = ?",
            (owner_id, name),
        ).fetchone()
        return row[0] if row else None

    def members_of(
        self, conn: sqlite3.Connection, owner_id: int, contact_id: int
    ) -> list[tuple[int, str]]:
        """Return ``(group_id, name)`` of every group of the owner holding the contact."""
        cursor = conn.execute(
            """
            SELECT rg.group_id, rg.name
            FROM roster_groups rg
            INNER JOIN group_members gm ON gm.group_id = rg.group_id
            WHERE rg.owner_id = ? AND gm.contact_id = ?
            ORDER BY rg.name
            """,
            (owner_id, contact_id),
        )
        return [(row[0], row[1]) for row in cursor.fetchall()]

    def memberships(self, conn: sqlite3.Connection, owner_id: int) -> dict[int, list[str]]:
        """Return group names per contact id for a whole roster."""
        cursor = conn.execute(
            """
            SELECT gm.contact_id, rg.name
            FROM roster_groups rg
            INNER JOIN group_members gm ON gm.group_id = rg.group_id
            WHERE rg.owner_id = ?
            ORDER BY rg.name
            """,
            (owner_id,),
        )
        groups: dict[int, list[str]] = {}
        for contact_id, name in cursor.fetchall():
            groups.setdefault(contact_id, []).append(name)
        return groups

    def add_member(self, conn: sqlite3.Connection, group_id: int, contact_id: int) -> bool:
        """Put a contact into a group. Already being a member is a no-op.

        Returns:
            True if a membership row was created
        """
        cursor = conn.execute(
            "INSERT OR IGNORE INTO group_members (group_id, contact_id) VALUES (?, ?)",
            (group_id, contact_id),
        )
        return cursor.rowcount > 0

    def remove_members(
        self, conn: sqlite3.Connection, group_ids: Iterable[int], contact_id: int
    ) -> int:
        """Take a contact out of the given groups.

        Returns:
            Number of membership rows deleted
        """
        group_ids = list(group_ids)
        if not group_ids:
            return 0
        placeholders = ",".join("?" for _ in group_ids)
        cursor = conn.execute(
            f"DELETE FROM group_members WHERE group_id IN ({placeholders}) AND contact_id = ?",
            (*group_ids, contact_id),
        )
        return cursor.rowcount

    def drop_owner_groups(self, conn: sqlite3.Connection, owner_id: int) -> int:
        """Delete all groups of an owner and their memberships.

        Returns:
            Number of groups deleted
        """
        conn.execute(
            """
            DELETE FROM group_members
            WHERE group_id IN (SELECT group_id FROM roster_groups WHERE owner_id = ?)
            """,
            (owner_id,),
        )
        cursor = conn.execute("DELETE FROM roster_groups WHERE owner_id = ?", (owner_id,))
        return cursor.rowcount

    def prune_empty(self, conn: sqlite3.Connection) -> int:
        """Delete groups that no longer have any member.

        Returns:
            Number of groups deleted
        """
        cursor = conn.execute(
            """
            DELETE FROM roster_groups
            WHERE NOT EXISTS (
                SELECT 1 FROM group_members gm WHERE gm.group_id = roster_groups.group_id
            )
            """
        )
        return cursor.rowcount
