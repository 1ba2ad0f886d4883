"""Error taxonomy for duplicate detection.

Per-signal failures (SignalUnavailable) are absorbed inside the scorers and
never reach callers.  Request-level failures (InvalidRecord, RecordNotFound,
AuthorizationDenied) are raised to the caller with an explicit ``kind`` so the
REST and CLI layers can map them to a response.  PersistenceConflict is raised
by the repository on a concurrent group insert and swallowed by the
orchestrator.
"""

from __future__ import annotations


class DetectionError(Exception):
    """Base class for all duplicate-detection errors."""

    kind: str = "detection_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class SignalUnavailable(DetectionError):
    """An embedding or image fetch failed or timed out."""

    kind = "signal_unavailable"


class RecordNotFound(DetectionError):
    """A referenced listing record does not exist (or was deleted mid-scan)."""

    kind = "record_not_found"


class AuthorizationDenied(DetectionError):
    """The actor is not allowed to perform the requested action."""

    kind = "authorization_denied"


class PersistenceConflict(DetectionError):
    """A concurrent writer already inserted the same duplicate group."""

    kind = "persistence_conflict"


class InvalidRecord(DetectionError):
    """The supplied record is malformed (e.g. missing id or owner)."""

    kind = "invalid_record"
