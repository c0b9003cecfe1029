"""Importer schema models."""

from .schema import (
    BatchStatus,
    ErrorSeverity,
    ImportBatch,
    ImportErrorRecord,
    ImportProgress,
    ImportSession,
    SessionStatus,
    ValidationPreview,
)

__all__ = [
    "BatchStatus",
    "ErrorSeverity",
    "ImportBatch",
    "ImportErrorRecord",
    "ImportProgress",
    "ImportSession",
    "SessionStatus",
    "ValidationPreview",
]
