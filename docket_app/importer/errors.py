"""
Exception hierarchy for the batch importer.

Row-level problems never surface as exceptions outside a worker; they are
recorded as error records instead. The classes here cover intake rejection,
lifecycle misuse, and the batch-fatal conditions the lifecycle controller
acts on.
"""

from __future__ import annotations


class ImporterError(Exception):
    """Base exception for importer failures."""


class DuplicateFileError(ImporterError):
    """Raised when an upload's checksum matches a non-failed batch."""

    def __init__(self, checksum: str, existing_batch_id: int) -> None:
        super().__init__(f"File with checksum {checksum[:12]} was already imported as batch {existing_batch_id}.")
        self.checksum = checksum
        self.existing_batch_id = existing_batch_id


class UploadTooLargeError(ImporterError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Upload of {size} bytes exceeds the {limit} byte limit.")
        self.size = size
        self.limit = limit


class BatchNotFound(ImporterError):
    def __init__(self, batch_id: int) -> None:
        super().__init__(f"Import batch {batch_id} not found.")
        self.batch_id = batch_id


class InvalidTransitionError(ImporterError):
    """Raised when a batch status change would break the lifecycle order."""

    def __init__(self, batch_id: int | None, current, target) -> None:
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(f"Batch {batch_id} cannot move from {current_value} to {target_value}.")
        self.current = current
        self.target = target


class BatchFatalError(ImporterError):
    """Condition that moves a processing batch to FAILED."""


class SourceUnreadableError(BatchFatalError):
    """Stored upload is missing, undecodable, or has an unusable header."""


class StoreRetryExhausted(BatchFatalError):
    """A transient store failure persisted past the retry budget."""

    def __init__(self, row_number: int, attempts: int, cause: Exception) -> None:
        super().__init__(f"Row {row_number}: store still failing after {attempts} attempts ({cause}).")
        self.row_number = row_number
        self.attempts = attempts
        self.cause = cause


class BatchAborted(BatchFatalError):
    """Operator requested the batch stop."""


class SessionError(ImporterError):
    """Base exception for import session failures."""


class SessionNotFound(SessionError):
    pass


class SessionExpiredError(SessionError):
    def __init__(self, session_id: int) -> None:
        super().__init__(f"Import session {session_id} has expired.")
        self.session_id = session_id


class ErrorRecordNotFound(ImporterError):
    pass


class PreviewNotFound(ImporterError):
    """Raised for unknown previews and for previews past their expiry."""
