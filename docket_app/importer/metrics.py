"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

try:
    from prometheus_client import Counter, Histogram

    _PROMETHEUS_AVAILABLE = True
except ImportError:  # pragma: no cover - metrics optional in some deployments
    Counter = Histogram = None  # type: ignore
    _PROMETHEUS_AVAILABLE = False


if _PROMETHEUS_AVAILABLE:
    _batch_counter = Counter(
        "importer_batches_total",
        "Import batches finalized, by terminal status.",
        ["status"],
    )
    _batch_duration = Histogram(
        "importer_batch_duration_seconds",
        "Wall-clock duration of batch processing in seconds.",
        buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
    )
    _row_counter = Counter(
        "importer_rows_total",
        "Rows processed by outcome.",
        ["outcome"],
    )
    _row_duration = Histogram(
        "importer_row_duration_seconds",
        "Duration of a single row unit of work in seconds.",
        buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
    )
    _duplicate_upload_counter = Counter(
        "importer_duplicate_uploads_total",
        "Uploads rejected by the checksum gate.",
    )
else:  # pragma: no cover - fallbacks when prometheus_client missing
    _batch_counter = None
    _batch_duration = None
    _row_counter = None
    _row_duration = None
    _duplicate_upload_counter = None


def record_batch_finished(
    *,
    status: Literal["completed", "failed"],
    duration_seconds: float | None,
    succeeded: int,
    failed: int,
) -> None:
    """Capture metrics for a finalized batch."""

    if _batch_counter is not None:
        _batch_counter.labels(status=status).inc()
    if _batch_duration is not None and duration_seconds is not None:
        _batch_duration.observe(duration_seconds)
    if _row_counter is not None:
        if succeeded:
            _row_counter.labels(outcome="succeeded").inc(succeeded)
        if failed:
            _row_counter.labels(outcome="failed").inc(failed)


def record_row_duration(duration_seconds: float) -> None:
    if _row_duration is None:
        return
    _row_duration.observe(duration_seconds)


def record_duplicate_upload() -> None:
    """Increment the duplicate-upload rejection counter."""

    if _duplicate_upload_counter is None:
        return
    _duplicate_upload_counter.inc()
