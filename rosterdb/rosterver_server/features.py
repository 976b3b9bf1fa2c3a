"""
Stream feature advertisement for roster versioning.

RFC 6121 section 2.6.1: a server that supports roster versioning announces
it with a <ver/> element in the stream features it sends to authenticated
clients.
"""

from __future__ import annotations

import lxml.etree as etree

ROSTERVER_NS = "urn:xmpp:features:rosterver"


class RosterVersioningFeature:
    """Decides whether and what to add to a stream's features.

    Attributes:
        enabled: Whether the backing store supports versioning
    """

    namespace = ROSTERVER_NS

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    @classmethod
    def for_store(cls, store: object) -> RosterVersioningFeature:
        """Build the feature from a store's ``supports_versioning`` flag."""
        return cls(enabled=bool(getattr(store, "supports_versioning", False)))

    def stream_feature(self, is_server: bool, authenticated_jid: str | None) -> str | None:
        """Return the feature element for a stream, or None to decline.

        Args:
            is_server: True for server-to-server streams
            authenticated_jid: JID the client authenticated as, if any
        """
        if not self.enabled or is_server or not authenticated_jid:
            return None
        element = etree.Element("ver", nsmap={None: ROSTERVER_NS})
        return etree.tostring(element, encoding="unicode")
