"""Error taxonomy for the local store and sync engine.

Every condition the UI layer may need to tell apart has its own class.
Callers catch ``FieldLogError`` when they only care that something failed.
"""

from __future__ import annotations


class FieldLogError(Exception):
    """Base class for all fieldlog failures."""

    error_code = "FIELDLOG_ERROR"


class StorageUnavailable(FieldLogError):
    """Durable storage could not be opened or read."""

    error_code = "STORAGE_UNAVAILABLE"


class QuotaExceeded(FieldLogError):
    """A write would exceed the available local storage."""

    error_code = "QUOTA_EXCEEDED"
    user_message = "Not enough storage space. Try deleting some old observations."


class NotFound(FieldLogError):
    """An update or delete referenced identifiers that do not exist."""

    error_code = "NOT_FOUND"

    def __init__(self, ids) -> None:
        self.ids = sorted(ids) if not isinstance(ids, int) else [ids]
        super().__init__(f"unknown observation id(s): {self.ids}")


class InvalidRecord(FieldLogError, ValueError):
    """A field value violates the observation record invariants."""

    error_code = "INVALID_RECORD"


class InvalidTransition(FieldLogError):
    """A sync status change that the state machine does not allow."""

    error_code = "INVALID_TRANSITION"


class ValidationSkipped(FieldLogError):
    """A reference-data row lacked required taxonomic fields."""

    error_code = "VALIDATION_SKIPPED"


class NetworkUnavailable(FieldLogError):
    """The remote service could not be reached (transport error, timeout, 5xx)."""

    error_code = "NETWORK_UNAVAILABLE"


class RemoteRejected(FieldLogError):
    """The remote service refused a write with an application-level error."""

    error_code = "REMOTE_REJECTED"

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"remote rejected write ({status_code}): {detail}")
