"""Importer pipeline components."""

from __future__ import annotations

from .batch_service import BatchFilters, ImportBatchService, serialize_batch
from .checksum import ChecksumGate, compute_file_checksum
from .error_collector import ErrorCollector, ErrorFilters, ErrorRecordService, serialize_error
from .lifecycle import BatchLifecycleController, BatchResult, transition
from .options import BatchConfig
from .progress import ProgressTracker, latest_progress, serialize_progress
from .resolver import EntityResolver
from .sessions import ImportSessionManager, serialize_session
from .upsert import CaseUpsertEngine, run_row_unit
from .validation import PreviewService, RowValidator

__all__ = [
    "BatchConfig",
    "BatchFilters",
    "BatchLifecycleController",
    "BatchResult",
    "CaseUpsertEngine",
    "ChecksumGate",
    "EntityResolver",
    "ErrorCollector",
    "ErrorFilters",
    "ErrorRecordService",
    "ImportBatchService",
    "ImportSessionManager",
    "PreviewService",
    "ProgressTracker",
    "RowValidator",
    "compute_file_checksum",
    "latest_progress",
    "run_row_unit",
    "serialize_batch",
    "serialize_error",
    "serialize_progress",
    "serialize_session",
    "transition",
]
