"""Error taxonomy for the execution core.

Only ``ValidationError`` and ``StateConflict`` are hard failures for a
caller. ``ResourceNotFound`` rejects a request that names an unknown
session, job or device. ``TransientStorageError`` is safe to retry because
every write path is idempotent or serialized. ``DuplicateIgnored`` and
``ReviewRequired`` are soft signals and never reach an HTTP client as
errors.
"""

from __future__ import annotations


class ExecutionCoreError(Exception):
    """Base exception for all execution core errors."""

    code: str = "error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.reason = message
        super().__init__(message)


class ValidationError(ExecutionCoreError):
    """Malformed input, rejected before anything is written."""

    code = "validation_error"


class StateConflict(ExecutionCoreError):
    """Illegal transition or unassigned driver.

    The caller must resynchronize its view of the job before resubmitting;
    these are never retried automatically.
    """

    code = "state_conflict"


class ResourceNotFound(ExecutionCoreError):
    """Unknown session, job, driver, event or queue item."""

    code = "not_found"


class TransientStorageError(ExecutionCoreError):
    """Storage hiccup (lost connection, lock timeout, lost race)."""

    code = "transient_storage_error"


class DuplicateIgnored(ExecutionCoreError):
    """Idempotent replay of an already-recorded write. Treated as success."""

    code = "duplicate"


class ReviewRequired(ExecutionCoreError):
    """Accepted, but flagged for supervisor review."""

    code = "review_required"


class SyncDecryptionError(ValidationError):
    """Offline batch could not be decrypted or decoded."""

    code = "decryption_failed"
