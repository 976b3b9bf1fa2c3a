"""
Roster Server - versioned roster storage for an XMPP server.

This package implements the persistence layer behind a server's per-user
contact list ("roster") with RFC 6121 roster versioning:
- Identities (bare JIDs) interned to small integer ids
- Roster entries keyed by (owner, contact)
- Per-owner named groups and group membership
- An append-only journal whose entry numbers are the roster versions
- A retention sweeper reclaiming tombstoned entries

Architecture:
    ┌──────────────────┐     ┌──────────────────┐
    │  Roster manager  │────▶│   RosterStore    │
    │  (server layer)  │     │  (update engine) │
    └──────────────────┘     └────────┬─────────┘
                                      │
                 ┌────────────────────┼────────────────────┐
                 │                    │                    │
                 ▼                    ▼                    ▼
          ┌─────────────┐      ┌─────────────┐      ┌─────────────┐
          │  Identity   │      │    Group    │      │ Roster view │
          │  interner   │      │   catalog   │      │ + journal   │
          └─────────────┘      └─────────────┘      └─────────────┘
                                      │
                                      ▼
                               ┌─────────────┐
                               │   SQLite    │
                               └─────────────┘

Invariants:
    - Journal entry numbers are a single global, strictly increasing sequence
    - Every version-visible mutation of a pair appends exactly one journal row
    - Identity ids are never reused or changed once allocated
    - A failed operation leaves the roster unchanged

How to change safely:
    - Schema changes must keep existing journal numbering intact
    - Never reuse journal entry numbers (AUTOINCREMENT)
    - Keep write paths inside one explicit transaction

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
