"""
Progress tracking for a running batch.

Counters live in memory behind a lock and are written out as append-only
``ImportProgress`` snapshots. Intermediate snapshots are coalesced; the final
snapshot always carries the exact terminal counts.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from docket_app.models import Clock, ImportBatch, ImportProgress, as_utc, db, utc_now


def clamp_percentage(value: float | int | None) -> int | None:
    if value is None:
        return None
    return max(0, min(100, int(value)))


def compute_percentage(processed: int, total: int) -> int | None:
    """``floor(processed * 100 / total)``; unknown when nothing was declared."""

    if total <= 0:
        return None
    return clamp_percentage((processed * 100) // total)


@dataclass(frozen=True)
class ProgressDelta:
    processed: int = 1
    succeeded: int = 0
    failed: int = 0
    errors: int = 0
    warnings: int = 0


class ProgressTracker:
    def __init__(
        self,
        batch_id: int,
        total: int,
        *,
        session: Session | None = None,
        clock: Clock = utc_now,
        flush_every: int = 25,
        started_at: datetime | None = None,
    ) -> None:
        self.batch_id = batch_id
        self.total = max(0, int(total or 0))
        self.session = session or db.session
        self.clock = clock
        self.flush_every = max(1, int(flush_every))
        self.started_at = as_utc(started_at)
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.errors = 0
        self.warnings = 0
        self.step = "queued"
        self.message: str | None = None
        self._percentage: int | None = compute_percentage(0, self.total)
        self._since_flush = 0
        self._lock = threading.Lock()

    @property
    def percentage(self) -> int | None:
        return self._percentage

    def _recompute(self) -> None:
        candidate = compute_percentage(self.processed, self.total)
        if candidate is None:
            return
        if self._percentage is None or candidate > self._percentage:
            self._percentage = candidate

    def set_total(self, total: int) -> None:
        with self._lock:
            self.total = max(0, int(total or 0))
            self._recompute()

    def advance(self, delta: ProgressDelta) -> ImportProgress | None:
        """Apply ``delta``; returns the snapshot when this call triggered a flush."""

        with self._lock:
            self.processed += delta.processed
            self.succeeded += delta.succeeded
            self.failed += delta.failed
            self.errors += delta.errors
            self.warnings += delta.warnings
            self._recompute()
            self._since_flush += delta.processed
            due = self._since_flush >= self.flush_every
            if due:
                self._since_flush = 0
        if due:
            return self.flush()
        return None

    def set_step(self, step: str, message: str | None = None) -> ImportProgress | None:
        with self._lock:
            changed = step != self.step
            self.step = step
            self.message = message
        if changed:
            return self.flush()
        return None

    def finalize(self, step: str, message: str | None = None) -> ImportProgress:
        with self._lock:
            self.step = step
            self.message = message
            self._since_flush = 0
        return self.flush()

    def flush(self) -> ImportProgress:
        with self._lock:
            state = self.state()
        snapshot = ImportProgress(
            batch_id=self.batch_id,
            percentage=state["percentage"],
            step=state["step"],
            message=state["message"],
            processed_rows=state["processed_rows"],
            total_rows=state["total_rows"],
            succeeded_rows=state["succeeded_rows"],
            failed_rows=state["failed_rows"],
            error_count=state["error_count"],
            warning_count=state["warning_count"],
        )
        self.session.add(snapshot)
        batch = self.session.get(ImportBatch, self.batch_id)
        if batch is not None:
            batch.successful_records = state["succeeded_rows"]
            batch.failed_records = state["failed_rows"]
            batch.estimated_completion_at = self.estimate_completion(state["processed_rows"], state["total_rows"])
        self.session.commit()
        return snapshot

    def estimate_completion(self, processed: int, total: int) -> datetime | None:
        if self.started_at is None or processed <= 0 or total <= 0:
            return None
        now = self.clock()
        if processed >= total:
            return now
        elapsed = now - self.started_at
        return now + (elapsed / processed) * (total - processed)

    def state(self) -> dict[str, Any]:
        return {
            "percentage": self._percentage,
            "step": self.step,
            "message": self.message,
            "processed_rows": self.processed,
            "total_rows": max(self.total, self.succeeded + self.failed),
            "succeeded_rows": self.succeeded,
            "failed_rows": self.failed,
            "error_count": self.errors,
            "warning_count": self.warnings,
        }


def latest_progress(batch_id: int, session: Session | None = None) -> ImportProgress | None:
    session = session or db.session
    return (
        session.query(ImportProgress)
        .filter(ImportProgress.batch_id == batch_id)
        .order_by(ImportProgress.id.desc())
        .first()
    )


def serialize_progress(snapshot: ImportProgress | None) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    return {
        "batch_id": snapshot.batch_id,
        "percentage": snapshot.percentage,
        "step": snapshot.step,
        "message": snapshot.message,
        "processed_rows": snapshot.processed_rows,
        "total_rows": snapshot.total_rows,
        "succeeded_rows": snapshot.succeeded_rows,
        "failed_rows": snapshot.failed_rows,
        "error_count": snapshot.error_count,
        "warning_count": snapshot.warning_count,
        "recorded_at": snapshot.created_at.isoformat() if snapshot.created_at else None,
    }
