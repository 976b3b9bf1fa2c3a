"""
Versioned roster store for an XMPP server.

This module is the roster update engine and the single entry point the
server's roster-management layer talks to. It provides:
- Full roster fetch (load) and point lookups (load_one)
- Add/update of roster items including group membership (upsert)
- Two-phase removal (remove) and whole-roster removal (wipe)
- Roster version deltas for XEP-0237 style sync (changes_since)
- Journal audit reads (history)

Invariants:
    - Every mutating operation runs in one BEGIN IMMEDIATE transaction
    - A failed operation is rolled back completely; no partial group or
      subscription change survives
    - Each successful upsert/remove of a live entry bumps its version by
      exactly one journal row
    - Read paths never allocate identities

How to change safely:
    - Keep all writes to roster_entries going through RosterView
    - Keep group changes in the same transaction as the item intent
    - Test version numbers after every new write path

Thread safety:
    Each operation opens its own connection. SQLite serializes writers
    (single writer, many readers in WAL mode); run calls on worker threads
    if the caller needs concurrency.

Example:
    >>> store = RosterStore(StoreSettings(database="/var/lib/roster.sqlite"))
    >>> store.initialize()
    >>> store.upsert(
    ...     "u@example.com",
    ...     DesiredItem(jid="c@example.com", name="Carol", groups=["Friends"]),
    ...     respect_subscription=True,
    ... )
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from ..config import StoreSettings
from ..errors import IdentityResolutionError, NotConfiguredError, StorageFailure
from .groups import GroupCatalog
from .identity import IdentityInterner
from .items import SUBSCRIPTION_MASK, DesiredItem, JournalEntry, RosterItem, Subscription
from .journal import Journal, RosterRow, RosterView, group_add_op, group_del_op
from .schema import install_schema
from .sweeper import RetentionSweeper, SweepResult

logger = logging.getLogger(__name__)


class RosterStore:
    """SQLite backed roster storage with roster versioning.

    Attributes:
        settings: Store configuration
        identities: Identity interner
        groups: Group catalog
        journal: Roster journal
        view: Roster view (read model and write intents)
        sweeper: Retention sweeper
    """

    # Advertised to the server so it can offer urn:xmpp:features:rosterver
    supports_versioning = True

    def __init__(
        self,
        settings: StoreSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the roster store.

        Args:
            settings: Store configuration
            clock: Time source returning Unix seconds
        """
        self.settings = settings
        self._clock = clock

        self.identities = IdentityInterner()
        self.groups = GroupCatalog()
        self.journal = Journal(self._now_ms)
        self.view = RosterView(self.journal)
        self.sweeper = RetentionSweeper(
            groups=self.groups,
            journal=self.journal,
            retention_ms=settings.retention_ms,
            prune_orphan_journal=settings.prune_orphan_journal,
            prune_empty_groups=settings.prune_empty_groups,
        )

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def db_path(self) -> Path:
        return Path(self.settings.database)

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection to the roster database.

        Yields:
            SQLite connection in autocommit mode

        Raises:
            NotConfiguredError: If no database path is configured
        """
        if not self.settings.database:
            raise NotConfiguredError()

        db_path = self.db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.settings.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.settings.busy_timeout_ms}")
            if self.settings.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection, immediate: bool = True) -> Iterator[None]:
        """Run a block in an explicit transaction, rolling back on any error.

        Read paths use a deferred transaction to see one snapshot across
        their queries.
        """
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    @contextmanager
    def _operation(self, operation: str) -> Iterator[None]:
        """Translate SQLite and file system errors into StorageFailure."""
        try:
            yield
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Roster {operation} failed: {e}", extra={"operation": operation})
            raise StorageFailure(f"Roster {operation} failed: {e}", operation=operation) from e

    def initialize(self) -> None:
        """Check configuration, install the schema and run the startup sweep.

        Raises:
            NotConfiguredError: If no database is configured
            StorageFailure: If the schema cannot be installed
        """
        self.settings.validate_settings()

        with self._operation("initialize"), self._get_connection() as conn:
            install_schema(conn, self._now_ms())

        logger.info("Roster store initialized", extra={"database": self.settings.database})

        if self.settings.sweep_on_startup:
            self.sweep()

    def sweep(self) -> SweepResult | None:
        """Purge expired tombstones.

        Failures are logged and swallowed; reclamation is simply deferred
        to the next run.

        Returns:
            What was purged, or None if the sweep failed
        """
        try:
            with self._get_connection() as conn, self._transaction(conn):
                result = self.sweeper.sweep(conn, self._now_ms())
        except Exception as e:
            logger.error(f"Roster retention sweep failed: {e}", exc_info=True)
            return None

        logger.info(
            "Roster retention sweep finished",
            extra={
                "purged_entries": result.purged_entries,
                "pruned_journal": result.pruned_journal,
                "pruned_groups": result.pruned_groups,
            },
        )
        return result

    def _to_item(self, row: RosterRow, groups: list[str]) -> RosterItem:
        return RosterItem(
            jid=row.jid,
            name=row.name,
            subscription=Subscription.from_bitmask(row.subscription),
            groups=list(groups),
            version=row.version,
        )

    def load(self, owner: str, include_removed: bool = False) -> list[RosterItem]:
        """Load an owner's roster for full delivery.

        Tombstoned entries are left out unless ``include_removed`` is set.
        Stores that return every row on a full fetch hand tombstones out
        flagged as removed; pass ``include_removed=True`` for that result.
        A client receiving the full roster has nothing to delete, so
        removals otherwise only reach clients through changes_since.

        Args:
            owner: Owner bare JID
            include_removed: Also return tombstoned entries

        Returns:
            Roster items ordered by (version, contact)
        """
        logger.debug(f"Getting roster for '{owner}'")

        with self._operation("load"), self._get_connection() as conn:
            with self._transaction(conn, immediate=False):
                owner_id = self.identities.lookup(conn, owner)
                if owner_id is None:
                    return []
                rows = self.view.rows(conn, owner_id, include_removed=include_removed)
                groups = self.groups.memberships(conn, owner_id)

        return [self._to_item(row, groups.get(row.contact_id, [])) for row in rows]

    def load_one(self, owner: str, contact: str) -> RosterItem | None:
        """Load a single roster item, tombstoned or not.

        Returns:
            The item, or None if the owner has no entry for the contact
        """
        with self._operation("load_one"), self._get_connection() as conn:
            with self._transaction(conn, immediate=False):
                owner_id = self.identities.lookup(conn, owner)
                contact_id = self.identities.lookup(conn, contact)
                if owner_id is None or contact_id is None:
                    return None
                row = self.view.get(conn, owner_id, contact_id)
                if row is None:
                    return None
                groups = [name for _, name in self.groups.members_of(conn, owner_id, contact_id)]

        return self._to_item(row, groups)

    def changes_since(self, owner: str, version: int) -> list[RosterItem] | None:
        """Return the entries changed after ``version``, tombstones included.

        Args:
            owner: Owner bare JID
            version: Last roster version the client has seen

        Returns:
            Changed items ordered by (version, contact), or None if the
            delta cannot be computed and the client needs the full roster
        """
        with self._operation("changes_since"), self._get_connection() as conn:
            with self._transaction(conn, immediate=False):
                if version < 0 or version > self.journal.high_water_mark(conn):
                    return None
                if version < self.journal.pruned_through(conn):
                    return None
                owner_id = self.identities.lookup(conn, owner)
                if owner_id is None:
                    return []
                if self.journal.has_orphans_after(conn, owner_id, version):
                    # A removal the client has not seen was already purged
                    return None
                rows = self.view.rows(conn, owner_id, include_removed=True, since=version)
                groups = self.groups.memberships(conn, owner_id)

        return [self._to_item(row, groups.get(row.contact_id, [])) for row in rows]

    def roster_version(self, owner: str) -> int:
        """Highest version over the owner's entries (0 if none)."""
        with self._operation("roster_version"), self._get_connection() as conn:
            owner_id = self.identities.lookup(conn, owner)
            if owner_id is None:
                return 0
            return self.view.owner_version(conn, owner_id)

    def high_water_mark(self) -> int:
        """Highest journal entry number assigned in this store."""
        with self._operation("high_water_mark"), self._get_connection() as conn:
            return self.journal.high_water_mark(conn)

    def history(self, owner: str, contact: str) -> list[JournalEntry]:
        """Journal rows of a pair, oldest first."""
        with self._operation("history"), self._get_connection() as conn:
            owner_id = self.identities.lookup(conn, owner)
            contact_id = self.identities.lookup(conn, contact)
            if owner_id is None or contact_id is None:
                return []
            return self.journal.entries(conn, owner_id, contact_id)

    def upsert(
        self,
        owner: str,
        item: DesiredItem,
        respect_subscription: bool,
    ) -> RosterItem:
        """Add or update a roster item and its group membership.

        Args:
            owner: Owner bare JID
            item: Desired state of the item; ``groups`` is the full target set
            respect_subscription: Write ``item.subscription`` verbatim. When
                False the stored subscription is kept and copied back into
                ``item`` so the caller sees the real value. New entries
                always take ``item.subscription``.

        Returns:
            The committed item

        Raises:
            IdentityResolutionError: If owner or contact is not a usable address
            InconsistentStateError: If the entry changed under the transaction
            StorageFailure: On any SQLite or file system error
        """
        if not owner or not item.jid:
            raise IdentityResolutionError(
                "No userid and contactid", address=owner if not owner else item.jid
            )

        logger.debug(
            "Set roster item",
            extra={
                "owner": owner,
                "contact": item.jid,
                "respect_subscription": respect_subscription,
            },
        )

        desired_groups = list(dict.fromkeys(item.groups))
        requested = Subscription.from_bitmask(int(item.subscription or 0)) & SUBSCRIPTION_MASK

        with self._operation("upsert"), self._get_connection() as conn:
            owner_id = self.identities.resolve(conn, owner)
            contact_id = self.identities.resolve(conn, item.jid)

            with self._transaction(conn):
                existing = self.view.get(conn, owner_id, contact_id)
                group_ops = self._apply_group_delta(conn, owner_id, contact_id, desired_groups)

                if existing is None:
                    subscription = requested
                    version = self.view.add_item(
                        conn, owner_id, contact_id, item.name, int(subscription), group_ops
                    )
                elif existing.removed:
                    subscription = requested
                    version = self.view.restore_item(
                        conn, existing, item.name, int(subscription), group_ops
                    )
                else:
                    if respect_subscription:
                        subscription = requested
                    else:
                        subscription = Subscription.from_bitmask(existing.subscription)
                    version = self.view.update_item(
                        conn, existing, item.name, int(subscription), group_ops
                    )

        if not respect_subscription:
            item.subscription = subscription

        return RosterItem(
            jid=item.jid,
            name=item.name,
            subscription=subscription,
            groups=sorted(desired_groups),
            version=version,
        )

    def _apply_group_delta(
        self,
        conn: sqlite3.Connection,
        owner_id: int,
        contact_id: int,
        desired: list[str],
    ) -> list[str]:
        """Bring the contact's group membership to ``desired``.

        Returns:
            Journal descriptions of the membership changes made
        """
        members = self.groups.members_of(conn, owner_id, contact_id)
        current = {name: group_id for group_id, name in members}
        wanted = set(desired)

        to_remove = {name: group_id for name, group_id in current.items() if name not in wanted}
        self.groups.remove_members(conn, to_remove.values(), contact_id)
        ops = [group_del_op(name) for name in sorted(to_remove)]

        for name in desired:
            if name in current:
                continue
            group_id = self.groups.resolve_group(conn, owner_id, name)
            if self.groups.add_member(conn, group_id, contact_id):
                ops.append(group_add_op(name))

        return ops

    def remove(self, owner: str, contact: str) -> bool:
        """Remove a roster item.

        The first removal of a live entry tombstones it (and bumps its
        version); removing a tombstoned entry deletes it for good.

        Returns:
            True if an entry was tombstoned or deleted
        """
        logger.debug("Delete roster item", extra={"owner": owner, "contact": contact})

        with self._operation("remove"), self._get_connection() as conn:
            owner_id = self.identities.lookup(conn, owner)
            contact_id = self.identities.lookup(conn, contact)
            if owner_id is None or contact_id is None:
                return False

            with self._transaction(conn):
                existing = self.view.get(conn, owner_id, contact_id)
                current = self.groups.members_of(conn, owner_id, contact_id)
                self.groups.remove_members(conn, (group_id for group_id, _ in current), contact_id)
                group_ops = [group_del_op(name) for _, name in current]

                if existing is None:
                    self.view.groups_changed(conn, owner_id, contact_id, group_ops)
                    return False

                self.view.remove_item(conn, existing, group_ops)

        return True

    def wipe(self, owner: str) -> int:
        """Remove every entry and group of an owner.

        Live entries become tombstones, tombstoned entries are deleted.

        Returns:
            Number of entries affected
        """
        logger.info("Wiping roster", extra={"owner": owner})

        with self._operation("wipe"), self._get_connection() as conn:
            owner_id = self.identities.lookup(conn, owner)
            if owner_id is None:
                return 0

            with self._transaction(conn):
                rows = self.view.rows(conn, owner_id, include_removed=True)
                memberships = self.groups.memberships(conn, owner_id)
                self.groups.drop_owner_groups(conn, owner_id)

                for row in rows:
                    group_ops = [group_del_op(name) for name in memberships.pop(row.contact_id, [])]
                    self.view.remove_item(conn, row, group_ops)

                # Memberships of contacts without a roster entry
                for contact_id, names in memberships.items():
                    self.view.groups_changed(
                        conn, owner_id, contact_id, [group_del_op(name) for name in names]
                    )

        return len(rows)
