"""
Error types for the roster store.

This module defines all exception types raised by the store:
- RosterStoreError: Base exception
- NotConfiguredError: Store started without a backing database
- StorageFailure: Underlying SQLite error, wrapped with the failing operation
- IdentityResolutionError: An address could not be resolved or created
- InconsistentStateError: A precondition failed inside a transaction

Invariants:
    - All errors inherit from RosterStoreError
    - Errors include context for debugging
    - Identity/group allocation races are never surfaced as errors
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RosterStoreError(Exception):
    """Base exception for all roster store errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ROSTER_ERROR"
        self.details = details or {}


class NotConfiguredError(RosterStoreError):
    """No database location was configured.

    Fatal at startup.
    """

    def __init__(self, message: str = "No roster database configured") -> None:
        super().__init__(message, code="NOT_CONFIGURED")


class StorageFailure(RosterStoreError):
    """The SQLite engine reported an error.

    Raised when:
    - A statement fails inside a roster transaction
    - Schema bootstrap hits an error that is not "already exists"
    - The database file cannot be opened
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="STORAGE_FAILURE",
            details={"operation": operation},
        )
        self.operation = operation


class IdentityResolutionError(RosterStoreError):
    """An address could not be mapped to an identity id."""

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="IDENTITY_RESOLUTION",
            details={"address": address},
        )
        self.address = address


class InconsistentStateError(RosterStoreError):
    """A row expected inside a transaction was missing or changed.

    Attributes:
        owner: Owner address of the affected pair
        contact: Contact address of the affected pair
    """

    def __init__(
        self,
        message: str,
        owner: Optional[str] = None,
        contact: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="INCONSISTENT_STATE",
            details={"owner": owner, "contact": contact},
        )
        self.owner = owner
        self.contact = contact
