# docket_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, Clock, as_utc, db, utc_now
from .court import Case, CaseActivity, CaseJudgeAssignment, CaseStatus, CaseType, Court, CourtType, CustodyStatus, Judge
from .importer import (
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
    "db",
    "BaseModel",
    "Clock",
    "as_utc",
    "utc_now",
    # Court data
    "Court",
    "CourtType",
    "CaseType",
    "Judge",
    "Case",
    "CaseStatus",
    "CaseActivity",
    "CaseJudgeAssignment",
    "CustodyStatus",
    # Importer
    "BatchStatus",
    "ErrorSeverity",
    "ImportBatch",
    "ImportErrorRecord",
    "ImportProgress",
    "ImportSession",
    "SessionStatus",
    "ValidationPreview",
]
