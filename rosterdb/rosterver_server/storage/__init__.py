"""
Storage module for the roster server - versioned roster persistence.

This module handles:
- Identity interning (bare JID -> integer id)
- Per-owner groups and group membership
- The roster journal and the roster view
- Roster updates with group diffing and subscription policy
- Retention of tombstoned entries

Invariants:
    - All writes to roster entries go through the roster view
    - Every write path uses one transaction
    - Journal entry numbers are the roster versions

How to change safely:
    - Test version numbers for every new write path
    - Keep schema bootstrap idempotent
"""

from .groups import GroupCatalog
from .identity import IdentityInterner
from .items import DesiredItem, JournalEntry, RosterItem, Subscription
from .journal import Journal, RosterView
from .roster_store import RosterStore
from .sweeper import RetentionSweeper, SweepResult, SweeperService

__all__ = [
    "RosterStore",
    "RosterItem",
    "DesiredItem",
    "JournalEntry",
    "Subscription",
    "IdentityInterner",
    "GroupCatalog",
    "Journal",
    "RosterView",
    "RetentionSweeper",
    "SweeperService",
    "SweepResult",
]
