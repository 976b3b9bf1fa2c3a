"""
Roster Store Test Suite.

This package contains:
- unit/: Unit tests (in-memory or temporary SQLite files)
- integration/: Integration tests (file-backed store, concurrent writers)
"""
