"""Custom exception hierarchy for teamsync.

All engine exceptions inherit from TeamSyncError, which carries an error
code used by the host process when mapping failures to HTTP responses.

A lost race for an exclusive activity is not an exception: it is the
typed ArbitrationResult(accepted=False, ...).
"""

from __future__ import annotations


class TeamSyncError(Exception):
    """Base exception for all teamsync errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class TransientSyncError(TeamSyncError):
    """Timeouts, lock contention or temporary unavailability. Safe to retry."""

    def __init__(self, message: str, *, code: str = "TRANSIENT") -> None:
        super().__init__(message, code=code)


class EntityNotFoundError(TeamSyncError):
    """A referenced event, team or activity entry does not exist. Never retried."""

    def __init__(self, message: str, *, code: str = "NOT_FOUND") -> None:
        super().__init__(message, code=code)


class LocalStoreError(TeamSyncError):
    """The client-local durable store is unavailable or full."""

    def __init__(self, message: str, *, code: str = "LOCAL_STORE_DEGRADED") -> None:
        super().__init__(message, code=code)


class SubscriptionError(TeamSyncError):
    """A live read ended or could not be opened."""

    def __init__(self, message: str, *, code: str = "SUBSCRIPTION_ERROR") -> None:
        super().__init__(message, code=code)


class InvalidPathError(SubscriptionError):
    """Subscription path does not name a known document."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Unsupported subscription path: {path!r}", code="INVALID_PATH")
