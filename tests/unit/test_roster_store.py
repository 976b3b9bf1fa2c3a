"""
Unit tests for the roster store (update engine).

Tests cover:
- Add/update/remove of roster items
- Group membership diffing
- Subscription respect/preserve policy
- Two-phase removal and resurrection of tombstones
- Rollback on failure
- Wipe and version deltas
"""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from rosterdb.rosterver_server.config import StoreSettings
from rosterdb.rosterver_server.errors import (
    IdentityResolutionError,
    NotConfiguredError,
    StorageFailure,
)
from rosterdb.rosterver_server.storage import DesiredItem, RosterStore, Subscription

OWNER = "u@example.com"
CAROL = "carol@example.com"
DAVE = "dave@example.com"


class TestRosterStore:
    """Tests for RosterStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        """Create and initialize a store."""
        settings = StoreSettings(database=str(Path(data_dir) / "roster.sqlite"), wal_mode=False)
        store = RosterStore(settings)
        store.initialize()
        return store

    def test_add_item(self, store):
        """Adding an item stores name, subscription and groups."""
        item = store.upsert(
            OWNER,
            DesiredItem(jid=CAROL, name="Carol", subscription=Subscription.TO, groups=["Friends"]),
            respect_subscription=True,
        )

        assert item.jid == CAROL
        assert item.version == 1

        fetched = store.load_one(OWNER, CAROL)
        assert fetched is not None
        assert fetched.name == "Carol"
        assert fetched.subscription == Subscription.TO
        assert fetched.state == "to"
        assert fetched.groups == ["Friends"]
        assert fetched.version == 1
        assert not fetched.removed

    def test_update_bumps_version(self, store):
        """Each update produces a strictly greater version."""
        first = store.upsert(OWNER, DesiredItem(jid=CAROL, name="Carol"), True)
        second = store.upsert(OWNER, DesiredItem(jid=CAROL, name="Caroline"), True)
        third = store.upsert(OWNER, DesiredItem(jid=CAROL, name="Caroline"), True)

        assert first.version < second.version < third.version
        assert store.load_one(OWNER, CAROL).name == "Caroline"

    def test_group_delta(self, store):
        """Groups not desired are dropped, new ones added, others untouched."""
        store.upsert(OWNER, DesiredItem(jid=CAROL, groups=["A", "B", "C"]), True)
        before = store.high_water_mark()

        item = store.upsert(OWNER, DesiredItem(jid=CAROL, groups=["B", "C", "D"]), True)

        assert item.groups == ["B", "C", "D"]
        assert store.load_one(OWNER, CAROL).groups == ["B", "C", "D"]
        assert store.high_water_mark() > before

        last = store.history(OWNER, CAROL)[-1]
        assert "GRPDEL A" in last.operation
        assert "GRPADD D" in last.operation
        assert "GRPADD B" not in last.operation

    def test_group_only_change_bumps_version(self, store):
        """Changing only the groups still gives a new version."""
        first = store.upsert(OWNER, DesiredItem(jid=CAROL, name="Carol"), True)
        second = store.upsert(OWNER, DesiredItem(jid=CAROL, name="Carol", groups=["Work"]), True)

        assert second.version > first.version
        assert store.load_one(OWNER, CAROL).version == second.version

    def test_duplicate_group_names(self, store):
        """Repeated group names are stored once."""
        item = store.upsert(OWNER, DesiredItem(jid=CAROL, groups=["Work", "Work"]), True)
        assert item.groups == ["Work"]
        assert store.load_one(OWNER, CAROL).groups == ["Work"]

    def test_one_journal_row_per_operation(self, store):
        """An upsert touching item and groups appends a single journal row."""
        store.upsert(OWNER, DesiredItem(jid=CAROL, name="Carol", groups=["A", "B"]), True)
        store.upsert(OWNER, DesiredItem(jid=CAROL, name="C", groups=["C"]), True)

        history = store.history(OWNER, CAROL)
        assert len(history) == 2
        assert history[0].operation == "INSERT Carol, 0; GRPADD A; GRPADD B"
        assert history[1].operation == "UPDATE Carol 0; GRPDEL A; GRPDEL B; GRPADD C"

    def test_respect_subscription(self, store):
        """A respecting caller writes its subscription verbatim."""
        store.upsert(OWNER, DesiredItem(jid=CAROL, subscription=Subscription.NONE), True)
        item = store.upsert(
            OWNER,
            DesiredItem(jid=CAROL, subscription=Subscription.TO | Subscription.FROM),
            respect_subscription=True,
        )

        assert item.subscription == Subscription.TO | Subscription.FROM
        assert store.load_one(OWNER, CAROL).state == "both"

    def test_preserve_subscription(self, store):
        """A preserving caller keeps the stored value and gets it back."""
        stored = Subscription.TO | Subscription.FROM
        store.upsert(OWNER, DesiredItem(jid=CAROL, subscription=stored), True)

        desired = DesiredItem(jid=CAROL, name="Carol", subscription=Subscription.PENDING_OUT)
        item = store.upsert(OWNER, desired, respect_subscription=False)

        assert item.subscription == stored
        assert desired.subscription == stored
        fetched = store.load_one(OWNER, CAROL)
        assert fetched.subscription == stored
        assert fetched.name == "Carol"

    def test_preserve_subscription_on_insert_uses_input(self, store):
        """New entries always take the caller's subscription."""
        item = store.upsert(
            OWNER, DesiredItem(jid=CAROL, subscription=Subscription.PENDING_OUT), False
        )
        assert item.subscription == Subscription.PENDING_OUT
        assert store.load_one(OWNER, CAROL).ask == "subscribe"

    def test_caller_cannot_set_tombstone(self, store):
        """The tombstone bit is stripped from caller input."""
        item = store.upsert(
            OWNER,
            DesiredItem(jid=CAROL, subscription=Subscription.REMOVED | Subscription.TO),
            True,
        )
        assert item.subscription == Subscription.TO
        assert not store.load_one(OWNER, CAROL).removed

    def test_unset_subscription_is_preserved(self, store):
        """A preserving caller may leave the subscription unset."""
        stored = Subscription.TO | Subscription.PENDING_IN
        store.upsert(OWNER, DesiredItem(jid=CAROL, subscription=stored), True)

        desired = DesiredItem(jid=CAROL, name="C", subscription=None)
        item = store.upsert(OWNER, desired, respect_subscription=False)

        assert item.subscription == stored
        assert desired.subscription == stored
        assert store.load_one(OWNER, CAROL).name == "C"

    def test_unset_subscription_on_insert(self, store):
        """A new entry without a subscription is stored as none."""
        for respect in (True, False):
            jid = f"new-{respect}@example.com"
            item = store.upsert(OWNER, DesiredItem(jid=jid, subscription=None), respect)
            assert item.subscription == Subscription.NONE
            assert store.load_one(OWNER, jid).state == "none"

    def test_two_phase_remove(self, store):
        """First remove tombstones, second remove deletes."""
        added = store.upsert(OWNER, DesiredItem(jid=CAROL, name="Carol", groups=["Friends"]), True)

        assert store.remove(OWNER, CAROL) is True
        tombstone = store.load_one(OWNER, CAROL)
        assert tombstone is not None
        assert tombstone.removed
        assert tombstone.subscription & Subscription.REMOVED
        assert tombstone.groups == []
        assert tombstone.version > added.version

        assert store.remove(OWNER, CAROL) is True
        assert store.load_one(OWNER, CAROL) is None

        # The physical delete adds no journal row
        assert len(store.history(OWNER, CAROL)) == 2

    def test_remove_unknown(self, store):
        """Removing something that was never there is not an error."""
        assert store.remove(OWNER, "nobody@example.com") is False
        assert store.remove("stranger@example.com", CAROL) is False

    def test_upsert_resurrects_tombstone(self, store):
        """Re-adding a removed contact clears the tombstone."""
        store.upsert(OWNER, DesiredItem(jid=CAROL, subscription=Subscription.TO), True)
        store.remove(OWNER, CAROL)

        item = store.upsert(OWNER, DesiredItem(jid=CAROL, name="Carol again"), False)

        assert not item.removed
        fetched = store.load_one(OWNER, CAROL)
        assert not fetched.removed
        assert fetched.subscription == Subscription.NONE
        assert fetched.version == item.version
        assert store.history(OWNER, CAROL)[-1].operation.startswith("INSERT Carol again")

    def test_load_order_and_removed_filter(self, store):
        """load orders by version and hides tombstones unless asked."""
        store.upsert(OWNER, DesiredItem(jid=CAROL), True)
        store.upsert(OWNER, DesiredItem(jid=DAVE), True)
        store.upsert(OWNER, DesiredItem(jid=CAROL, name="Carol"), True)

        items = store.load(OWNER)
        assert [i.jid for i in items] == [DAVE, CAROL]
        assert [i.version for i in items] == sorted(i.version for i in items)

        store.remove(OWNER, DAVE)
        assert [i.jid for i in store.load(OWNER)] == [CAROL]
        assert [i.jid for i in store.load(OWNER, include_removed=True)] == [CAROL, DAVE]

    def test_load_unknown_owner(self, store):
        assert store.load("nobody@example.com") == []
        assert store.load_one("nobody@example.com", CAROL) is None
        assert store.roster_version("nobody@example.com") == 0

    def test_rosters_are_per_owner(self, store):
        """Owners do not see each other's entries or groups."""
        store.upsert(OWNER, DesiredItem(jid=CAROL, groups=["Friends"]), True)
        store.upsert(CAROL, DesiredItem(jid=OWNER, groups=["Family"]), True)

        assert [i.jid for i in store.load(OWNER)] == [CAROL]
        assert store.load(OWNER)[0].groups == ["Friends"]
        assert store.load(CAROL)[0].groups == ["Family"]

    def test_upsert_rejects_empty_address(self, store):
        with pytest.raises(IdentityResolutionError):
            store.upsert("", DesiredItem(jid=CAROL), True)
        with pytest.raises(IdentityResolutionError):
            store.upsert(OWNER, DesiredItem(jid=""), True)

    def test_failed_upsert_rolls_back(self, store, monkeypatch):
        """A failure mid-transaction leaves groups and version unchanged."""
        store.upsert(OWNER, DesiredItem(jid=CAROL, name="Carol", groups=["A"]), True)
        before = store.load_one(OWNER, CAROL)

        def fail(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store.view, "update_item", fail)

        with pytest.raises(StorageFailure) as exc_info:
            store.upsert(OWNER, DesiredItem(jid=CAROL, name="X", groups=["B"]), True)
        assert exc_info.value.operation == "upsert"

        after = store.load_one(OWNER, CAROL)
        assert after.groups == ["A"]
        assert after.name == "Carol"
        assert after.version == before.version

    def test_failed_remove_rolls_back(self, store, monkeypatch):
        store.upsert(OWNER, DesiredItem(jid=CAROL, groups=["A"]), True)

        def fail(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store.view, "remove_item", fail)

        with pytest.raises(StorageFailure):
            store.remove(OWNER, CAROL)

        after = store.load_one(OWNER, CAROL)
        assert not after.removed
        assert after.groups == ["A"]

    def test_wipe(self, store):
        """Wipe tombstones every entry and drops all groups."""
        store.upsert(OWNER, DesiredItem(jid=CAROL, groups=["Friends"]), True)
        store.upsert(OWNER, DesiredItem(jid=DAVE, groups=["Work"]), True)

        assert store.wipe(OWNER) == 2

        assert store.load(OWNER) == []
        tombstones = store.load(OWNER, include_removed=True)
        assert {i.jid for i in tombstones} == {CAROL, DAVE}
        assert all(i.removed and i.groups == [] for i in tombstones)

        # A second wipe deletes the tombstones
        assert store.wipe(OWNER) == 2
        assert store.load(OWNER, include_removed=True) == []

    def test_changes_since(self, store):
        """Deltas contain only entries changed after the given version."""
        a = store.upsert(OWNER, DesiredItem(jid=CAROL), True)
        store.upsert(OWNER, DesiredItem(jid=DAVE), True)
        store.upsert(OWNER, DesiredItem(jid=CAROL, name="Carol"), True)

        delta = store.changes_since(OWNER, a.version)
        assert [i.jid for i in delta] == [DAVE, CAROL]

        current = store.roster_version(OWNER)
        assert store.changes_since(OWNER, current) == []

    def test_changes_since_includes_tombstones(self, store):
        store.upsert(OWNER, DesiredItem(jid=CAROL), True)
        version = store.roster_version(OWNER)
        store.remove(OWNER, CAROL)

        delta = store.changes_since(OWNER, version)
        assert len(delta) == 1
        assert delta[0].removed

    def test_changes_since_requires_full_fetch(self, store):
        """Purged removals and unknown versions force a full fetch."""
        store.upsert(OWNER, DesiredItem(jid=CAROL), True)
        version = store.roster_version(OWNER)
        store.remove(OWNER, CAROL)
        store.remove(OWNER, CAROL)

        assert store.changes_since(OWNER, version) is None
        assert store.changes_since(OWNER, store.high_water_mark()) == []
        assert store.changes_since(OWNER, store.high_water_mark() + 1) is None

    def test_not_configured(self, monkeypatch):
        monkeypatch.delenv("ROSTER_DATABASE", raising=False)
        store = RosterStore(StoreSettings())

        with pytest.raises(NotConfiguredError):
            store.initialize()
        with pytest.raises(NotConfiguredError):
            store.load(OWNER)

    def test_unusable_database_path(self, data_dir):
        """File system errors opening the database surface as StorageFailure."""
        blocker = Path(data_dir) / "blocker"
        blocker.write_text("not a directory")
        store = RosterStore(StoreSettings(database=str(blocker / "roster.sqlite")))

        with pytest.raises(StorageFailure) as exc_info:
            store.initialize()
        assert exc_info.value.operation == "initialize"

        with pytest.raises(StorageFailure) as exc_info:
            store.load(OWNER)
        assert exc_info.value.operation == "load"
        assert isinstance(exc_info.value.__cause__, OSError)

    def test_initialize_is_idempotent(self, store):
        store.upsert(OWNER, DesiredItem(jid=CAROL), True)
        store.initialize()
        assert store.load_one(OWNER, CAROL) is not None

    def test_supports_versioning(self, store):
        assert store.supports_versioning is True
