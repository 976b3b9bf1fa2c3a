"""
Roster database schema and bootstrap.

Table schema:
    identities:
        - id INTEGER (AUTOINCREMENT, never reused)
        - address TEXT (bare JID, UNIQUE)

    roster_entries:
        - owner_id INTEGER -> identities
        - contact_id INTEGER -> identities
        - name TEXT
        - subscription INTEGER (bitmask, 256 = tombstone)
        - PRIMARY KEY (owner_id, contact_id)

    roster_groups:
        - group_id INTEGER
        - owner_id INTEGER -> identities
        - name TEXT
        - UNIQUE (owner_id, name)

    group_members:
        - group_id INTEGER -> roster_groups
        - contact_id INTEGER -> identities
        - PRIMARY KEY (group_id, contact_id)

    journal:
        - entry INTEGER (AUTOINCREMENT, the version clock)
        - owner_id INTEGER -> identities
        - contact_id INTEGER -> identities
        - ts_ms INTEGER (Unix ms)
        - operation TEXT

    store_meta:
        - key TEXT (e.g. journal_pruned_through)
        - value INTEGER

    roster (view):
        roster_entries joined with both identities and the highest
        journal entry of the pair as ``version`` (0 when there is none).

Statements run one at a time. An "already exists" failure means an earlier
run created the object and is skipped; anything else aborts the bootstrap.
"""

from __future__ import annotations

import logging
import sqlite3

from ..errors import StorageFailure

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE schema_version (
        version INTEGER PRIMARY KEY,
        applied_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE identities (
        id INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
        address TEXT NOT NULL,
        UNIQUE (address)
    )
    """,
    """
    CREATE TABLE roster_entries (
        owner_id INTEGER NOT NULL REFERENCES identities(id),
        contact_id INTEGER NOT NULL REFERENCES identities(id),
        name TEXT,
        subscription INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (owner_id, contact_id)
    )
    """,
    """
    CREATE TABLE roster_groups (
        group_id INTEGER PRIMARY KEY NOT NULL,
        owner_id INTEGER NOT NULL REFERENCES identities(id),
        name TEXT NOT NULL,
        UNIQUE (owner_id, name)
    )
    """,
    """
    CREATE TABLE group_members (
        group_id INTEGER NOT NULL REFERENCES roster_groups(group_id),
        contact_id INTEGER NOT NULL REFERENCES identities(id),
        PRIMARY KEY (group_id, contact_id)
    )
    """,
    "CREATE INDEX idx_group_members_contact ON group_members(contact_id)",
    """
    CREATE TABLE journal (
        entry INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
        owner_id INTEGER NOT NULL REFERENCES identities(id),
        contact_id INTEGER NOT NULL REFERENCES identities(id),
        ts_ms INTEGER NOT NULL,
        operation TEXT NOT NULL
    )
    """,
    "CREATE INDEX idx_journal_pair ON journal(owner_id, contact_id, entry)",
    """
    CREATE TABLE store_meta (
        key TEXT PRIMARY KEY NOT NULL,
        value INTEGER NOT NULL
    )
    """,
    """
    CREATE VIEW roster AS
        SELECT
            r.owner_id AS owner_id,
            r.contact_id AS contact_id,
            o.address AS owner,
            c.address AS jid,
            r.name AS name,
            r.subscription AS subscription,
            IFNULL(
                (SELECT MAX(j.entry) FROM journal j
                 WHERE j.owner_id = r.owner_id AND j.contact_id = r.contact_id),
                0
            ) AS version
        FROM roster_entries r
        INNER JOIN identities o ON o.id = r.owner_id
        INNER JOIN identities c ON c.id = r.contact_id
    """,
)


def _is_already_exists(exc: sqlite3.Error) -> bool:
    return "already exists" in str(exc)


def install_schema(conn: sqlite3.Connection, now_ms: int) -> int:
    """Create any missing schema objects.

    Args:
        conn: Database connection (autocommit mode)
        now_ms: Timestamp recorded for the schema version row

    Returns:
        Number of objects created by this call

    Raises:
        StorageFailure: On any error other than "already exists"
    """
    created = 0
    for sql in SCHEMA_STATEMENTS:
        try:
            conn.execute(sql)
            created += 1
        except sqlite3.OperationalError as e:
            if not _is_already_exists(e):
                logger.error(f"SQL error {e} for {sql.strip()}")
                raise StorageFailure(f"SQL error: {e}", operation="install_schema") from e
        except sqlite3.Error as e:
            logger.error(f"SQL error {e} for {sql.strip()}")
            raise StorageFailure(f"SQL error: {e}", operation="install_schema") from e

    try:
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (SCHEMA_VERSION, now_ms),
        )
    except sqlite3.Error as e:
        raise StorageFailure(f"SQL error: {e}", operation="install_schema") from e

    if created:
        logger.info("Created all roster tables", extra={"created": created})
    else:
        logger.debug("Roster schema already installed")
    return created
