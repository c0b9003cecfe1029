"""
SQLAlchemy models for the batch importer schema.

Batches own their progress snapshots and error records. Sessions and
validation previews are standalone: a batch only correlates with the session
that created it, and previews are never referenced by a batch.
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utc_now


class BatchStatus(str, enum.Enum):
    """Lifecycle states for an import batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CLEANED = "cleaned"


class ErrorSeverity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ImportBatch(BaseModel):
    """One file-import attempt and its lifecycle record."""

    __tablename__ = "import_batches"

    id: Mapped[int] = mapped_column(primary_key=True)
    import_date: Mapped[date] = mapped_column(db.Date, nullable=False, index=True)
    filename: Mapped[str] = mapped_column(db.String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    # Application-level dedup only; deliberately not unique.
    file_checksum: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    total_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    successful_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    empty_rows_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    user_config: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    validation_warnings: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    metrics_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus, name="batch_status_enum"),
        nullable=False,
        default=BatchStatus.PENDING,
        index=True,
    )
    abort_requested: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    created_by: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    session_id: Mapped[int | None] = mapped_column(
        ForeignKey("import_sessions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    ingest_params_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Stored upload location and intake options (file_path, dry_run, total_rows_hint).",
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    estimated_completion_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    cleaned_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    cleaned_from_status: Mapped[BatchStatus | None] = mapped_column(
        Enum(BatchStatus, name="batch_cleaned_from_status_enum"),
        nullable=True,
    )

    activities = relationship("CaseActivity", back_populates="batch")
    progress_snapshots = relationship(
        "ImportProgress",
        back_populates="batch",
        order_by="ImportProgress.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    error_records = relationship(
        "ImportErrorRecord",
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    session = relationship("ImportSession")

    __table_args__ = (Index("idx_import_batches_checksum_status", "file_checksum", "status"),)

    def __repr__(self):
        return f"<ImportBatch {self.id} {self.filename} {self.status}>"


class ImportProgress(BaseModel):
    """Append-only progress log; the newest row is the current state."""

    __tablename__ = "import_progress"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("import_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    percentage: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    step: Mapped[str] = mapped_column(db.String(50), nullable=False)
    message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    succeeded_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    warning_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    batch = relationship("ImportBatch", back_populates="progress_snapshots")


class ImportErrorRecord(BaseModel):
    """One diagnostic tied to a batch row and, optionally, a column."""

    __tablename__ = "import_error_records"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("import_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    row_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    column_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    error_kind: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    message: Mapped[str] = mapped_column(db.Text, nullable=False)
    raw_value: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    suggested_fix: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    severity: Mapped[ErrorSeverity] = mapped_column(
        Enum(ErrorSeverity, name="error_severity_enum"),
        nullable=False,
        default=ErrorSeverity.ERROR,
        index=True,
    )
    is_resolved: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    resolved_by: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    batch = relationship("ImportBatch", back_populates="error_records")

    __table_args__ = (Index("idx_import_errors_batch_row", "batch_id", "row_number"),)


class ImportSession(BaseModel):
    """Time-bounded handle correlating a user's import interactions."""

    __tablename__ = "import_sessions"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    token: Mapped[str] = mapped_column(db.String(128), nullable=False, unique=True)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="import_session_status_enum"),
        nullable=False,
        default=SessionStatus.ACTIVE,
        index=True,
    )
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    last_activity_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)


class ValidationPreview(BaseModel):
    """Ephemeral dry-run result; treated as gone once ``expires_at`` passes."""

    __tablename__ = "validation_previews"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    filename: Mapped[str] = mapped_column(db.String(255), nullable=False)
    file_checksum: Mapped[str] = mapped_column(db.String(64), nullable=False)
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    valid_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    invalid_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    warning_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    empty_rows_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    errors_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    warnings_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    preview_rows_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, index=True)
