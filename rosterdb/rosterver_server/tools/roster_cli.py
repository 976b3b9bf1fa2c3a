"""
Roster admin CLI.

Operator commands against a roster database:
- init: Install the schema and run the startup sweep
- sweep: Purge expired tombstones now
- dump: Print an owner's roster (or the delta since a version) as JSON
- history: Print the journal of one (owner, contact) pair as JSON
- wipe: Remove an owner's whole roster

Usage:
    rosterdb-admin --database roster.sqlite init
    rosterdb-admin dump user@example.com --since 42
    rosterdb-admin history user@example.com contact@example.com

Settings not given on the command line come from ROSTER_* environment
variables (see config.py).

Invariants:
    - Output is deterministic (sorted JSON)
    - Errors give a non-zero exit code
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from ..config import StoreSettings
from ..errors import RosterStoreError
from ..storage import RosterItem, RosterStore

logger = logging.getLogger(__name__)


def _item_to_dict(item: RosterItem) -> dict[str, Any]:
    return {
        "jid": item.jid,
        "name": item.name,
        "subscription": item.state,
        "ask": item.ask,
        "removed": item.removed,
        "groups": item.groups,
        "version": item.version,
    }


class RosterCLI:
    """CLI commands over a RosterStore.

    Example:
        >>> cli = RosterCLI(store)
        >>> print(cli.dump("user@example.com"))
    """

    def __init__(self, store: RosterStore) -> None:
        self.store = store

    def init(self) -> str:
        self.store.initialize()
        return json.dumps({"high_water_mark": self.store.high_water_mark()}, sort_keys=True)

    def sweep(self) -> str:
        result = self.store.sweep()
        if result is None:
            raise RosterStoreError("Sweep failed, see log", code="SWEEP_FAILED")
        return json.dumps(
            {
                "purged_entries": result.purged_entries,
                "pruned_journal": result.pruned_journal,
                "pruned_groups": result.pruned_groups,
            },
            sort_keys=True,
        )

    def dump(
        self,
        owner: str,
        since: int | None = None,
        include_removed: bool = False,
    ) -> str:
        """Export a roster, or the changes after ``since``, to JSON."""
        if since is None:
            items = self.store.load(owner, include_removed=include_removed)
            full = True
        else:
            delta = self.store.changes_since(owner, since)
            full = delta is None
            items = self.store.load(owner) if delta is None else delta

        return json.dumps(
            {
                "owner": owner,
                "full": full,
                "version": self.store.roster_version(owner),
                "items": [_item_to_dict(item) for item in items],
            },
            indent=2,
            sort_keys=True,
        )

    def history(self, owner: str, contact: str) -> str:
        entries = self.store.history(owner, contact)
        return json.dumps(
            [
                {"entry": e.entry, "timestamp": e.timestamp, "operation": e.operation}
                for e in entries
            ],
            indent=2,
            sort_keys=True,
        )

    def wipe(self, owner: str) -> str:
        return json.dumps({"owner": owner, "removed": self.store.wipe(owner)}, sort_keys=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Roster store admin tool")
    parser.add_argument("--database", help="Roster SQLite file (default: $ROSTER_DATABASE)")
    parser.add_argument(
        "--retention-days", type=float, help="Tombstone retention (default: 3 days)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Install schema and run the startup sweep")
    subparsers.add_parser("sweep", help="Purge expired tombstones")

    dump_parser = subparsers.add_parser("dump", help="Print a roster as JSON")
    dump_parser.add_argument("owner", help="Owner bare JID")
    dump_parser.add_argument("--since", type=int, help="Only changes after this version")
    dump_parser.add_argument(
        "--include-removed", action="store_true", help="Include tombstoned entries"
    )

    history_parser = subparsers.add_parser("history", help="Print a pair's journal")
    history_parser.add_argument("owner", help="Owner bare JID")
    history_parser.add_argument("contact", help="Contact bare JID")

    wipe_parser = subparsers.add_parser("wipe", help="Remove an owner's whole roster")
    wipe_parser.add_argument("owner", help="Owner bare JID")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    overrides: dict[str, Any] = {}
    if args.database:
        overrides["database"] = args.database
    if args.retention_days is not None:
        overrides["retention_days"] = args.retention_days
    # Only init runs the startup sweep; the schema install is idempotent
    overrides["sweep_on_startup"] = args.command == "init"

    settings = StoreSettings(**overrides)
    store = RosterStore(settings)
    cli = RosterCLI(store)

    try:
        if args.command == "init":
            output = cli.init()
        else:
            store.initialize()
            if args.command == "sweep":
                output = cli.sweep()
            elif args.command == "dump":
                output = cli.dump(args.owner, args.since, args.include_removed)
            elif args.command == "history":
                output = cli.history(args.owner, args.contact)
            else:
                output = cli.wipe(args.owner)
    except (RosterStoreError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
