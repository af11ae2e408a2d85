"""Exception hierarchy for the glucose sync engine.

Every error carries an ``ErrorKind`` so callers can tell a retryable network
hiccup apart from a credentials problem without string matching:

    TRANSIENT      — network unreachable, remote 5xx; safe to retry later
    AUTHORIZATION  — remote 401/403 or local store permission denied
    DATA           — malformed record or rejected request payload
    INVARIANT      — queue/state storage failure or broken bookkeeping
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    AUTHORIZATION = "authorization"
    DATA = "data"
    INVARIANT = "invariant"


class TideSyncError(Exception):
    """Base exception for sync engine errors."""

    kind: ErrorKind = ErrorKind.INVARIANT


# ---------------------------------------------------------------------------
# Remote service
# ---------------------------------------------------------------------------


class RemoteError(TideSyncError):
    """An error talking to the remote service."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: object = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


class RemoteUnavailableError(RemoteError):
    """Network failure or a 5xx response."""

    kind = ErrorKind.TRANSIENT


class RemoteAuthorizationError(RemoteError):
    """Missing session, or a 401/403 response."""

    kind = ErrorKind.AUTHORIZATION


class RemoteRequestError(RemoteError):
    """The remote rejected the request itself (other 4xx, unparseable body)."""

    kind = ErrorKind.DATA


# ---------------------------------------------------------------------------
# Local store
# ---------------------------------------------------------------------------


class LocalStoreError(TideSyncError):
    """The local health store failed a query or write."""

    kind = ErrorKind.TRANSIENT


class LocalStoreAuthorizationError(LocalStoreError):
    """Read or write permission for the local store was denied."""

    kind = ErrorKind.AUTHORIZATION


# ---------------------------------------------------------------------------
# Records / persistence
# ---------------------------------------------------------------------------


class RecordValidationError(TideSyncError):
    """A single remote record is missing a required field or is malformed."""

    kind = ErrorKind.DATA


class StorageError(TideSyncError):
    """Durable sync storage could not be read or written."""

    kind = ErrorKind.INVARIANT


class QueueStorageError(StorageError):
    """The pending-sample queue could not be read or written."""


class StateStorageError(StorageError):
    """The sync state table could not be read or written."""


class InvariantViolationError(TideSyncError):
    """Bookkeeping went inconsistent (e.g. a confirmed batch could not be removed)."""

    kind = ErrorKind.INVARIANT
