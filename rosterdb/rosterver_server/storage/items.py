"""
Roster item value types.

The subscription state is persisted as a bitmask. The low bits hold the
XMPP subscription relationship and pending requests; bit 256 is the
tombstone flag marking an entry that was removed but not yet purged.

    TO          1    we receive the contact's presence
    FROM        2    the contact receives our presence
    PENDING_IN  4    the contact asked to subscribe to us
    PENDING_OUT 8    we asked to subscribe to the contact
    REMOVED     256  tombstone
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Subscription(enum.IntFlag):
    """Subscription bitmask flags."""

    NONE = 0
    TO = 1
    FROM = 2
    PENDING_IN = 4
    PENDING_OUT = 8
    REMOVED = 256

    @classmethod
    def from_bitmask(cls, value: int) -> Subscription:
        return cls(value & _KNOWN_BITS)

    @property
    def state(self) -> str:
        """The RFC 6121 subscription attribute value."""
        both = Subscription.TO | Subscription.FROM
        if self & both == both:
            return "both"
        if self & Subscription.TO:
            return "to"
        if self & Subscription.FROM:
            return "from"
        return "none"

    @property
    def removed(self) -> bool:
        return bool(self & Subscription.REMOVED)


_KNOWN_BITS = (
    Subscription.TO
    | Subscription.FROM
    | Subscription.PENDING_IN
    | Subscription.PENDING_OUT
    | Subscription.REMOVED
)

# Bits a caller may set; the tombstone is owned by the store.
SUBSCRIPTION_MASK = _KNOWN_BITS & ~Subscription.REMOVED


@dataclass
class RosterItem:
    """A roster entry as seen by the server.

    Attributes:
        jid: Bare contact address
        name: Display name, if any
        subscription: Subscription bitmask (may carry the tombstone flag)
        groups: Names of the owner's groups containing the contact
        version: Highest journal entry number for the pair (0 if none)
    """

    jid: str
    name: str | None = None
    subscription: Subscription = Subscription.NONE
    groups: list[str] = field(default_factory=list)
    version: int = 0

    @property
    def removed(self) -> bool:
        """True if the entry is tombstoned."""
        return self.subscription.removed

    @property
    def state(self) -> str:
        return self.subscription.state

    @property
    def ask(self) -> str | None:
        """The ask attribute: set while our subscription request is pending."""
        if self.subscription & Subscription.PENDING_OUT:
            return "subscribe"
        return None


@dataclass
class DesiredItem:
    """The item a caller wants stored.

    ``groups`` is the full target set of group names; groups not listed
    are removed. ``subscription`` is only written when the caller asks the
    store to respect it (or when the entry is new); None reads as no
    subscription.
    """

    jid: str
    name: str | None = None
    subscription: Subscription | None = None
    groups: list[str] = field(default_factory=list)


@dataclass
class JournalEntry:
    """One row of the roster journal.

    Attributes:
        entry: Global, strictly increasing entry number (the version)
        owner: Owner address
        contact: Contact address
        timestamp: Time of the mutation (Unix ms)
        operation: Human readable description of the mutation
    """

    entry: int
    owner: str
    contact: str
    timestamp: int
    operation: str
