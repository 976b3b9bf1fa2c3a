"""
Identity interner: bare JID strings to stable integer ids.

Ids are used as foreign keys by every other roster table. An id is
assigned on first reference and never changes or gets reused.

Invariants:
    - address is unique in the identities table
    - Concurrent allocation of the same address converges on one id:
      the loser's INSERT hits the UNIQUE constraint and re-reads the winner
"""

from __future__ import annotations

import logging
import sqlite3

from ..errors import IdentityResolutionError

logger = logging.getLogger(__name__)


class IdentityInterner:
    """Get-or-create mapping of addresses to identity ids."""

    def lookup(self, conn: sqlite3.Connection, address: str) -> int | None:
        """Return the id of an address, or None if it was never interned."""
        row = conn.execute("SELECT id FROM identities WHERE address = ?", (address,)).fetchone()
        return row[0] if row else None

    def resolve(self, conn: sqlite3.Connection, address: str) -> int:
        """Return the id of an address, allocating one if needed.

        Args:
            conn: Database connection
            address: Bare JID

        Returns:
            Identity id

        Raises:
            IdentityResolutionError: If the address is empty or no id could
                be read back after a lost allocation race
        """
        if not isinstance(address, str) or not address:
            raise IdentityResolutionError(f"Cannot resolve address {address!r}", address=address)

        existing = self.lookup(conn, address)
        if existing is not None:
            return existing

        try:
            cursor = conn.execute("INSERT INTO identities (address) VALUES (?)", (address,))
        except sqlite3.IntegrityError:
            # Another writer allocated it first
            winner = self.lookup(conn, address)
            if winner is None:
                raise IdentityResolutionError(
                    f"Failed to allocate an id for {address}", address=address
                )
            logger.debug("Lost identity allocation race", extra={"address": address})
            return winner

        logger.debug("Allocated identity", extra={"address": address, "id": cursor.lastrowid})
        return cursor.lastrowid
