"""
Checksum and dedup gate for uploaded case-return files.

The duplicate check is an existence query, not a storage constraint: two
identical uploads racing each other may both be admitted. Case matching stays
safe in that situation because cases are unique on (case number, court name).
"""

from __future__ import annotations

import hashlib
from pathlib import Path

from flask import current_app
from sqlalchemy.orm import Session

from docket_app.importer.errors import DuplicateFileError, UploadTooLargeError
from docket_app.importer.metrics import record_duplicate_upload
from docket_app.importer.pipeline.options import BatchConfig
from docket_app.importer.utils import persist_upload_bytes, resolve_upload_directory
from docket_app.models import BatchStatus, Clock, ImportBatch, db, utc_now

_BLOCKING_STATUSES = (BatchStatus.PENDING, BatchStatus.PROCESSING, BatchStatus.COMPLETED)


def compute_file_checksum(data: bytes) -> str:
    """Return the SHA-256 hex digest of the uploaded bytes."""

    return hashlib.sha256(data).hexdigest()


def blocks_reimport(batch: ImportBatch) -> bool:
    """True when ``batch`` makes a new upload with the same checksum a duplicate."""

    if batch.status in _BLOCKING_STATUSES:
        return True
    if batch.status == BatchStatus.CLEANED:
        return batch.cleaned_from_status != BatchStatus.FAILED
    return False


class ChecksumGate:
    def __init__(self, session: Session | None = None, *, clock: Clock = utc_now) -> None:
        self.session = session or db.session
        self.clock = clock

    def find_duplicate(self, checksum: str) -> ImportBatch | None:
        candidates = (
            self.session.query(ImportBatch)
            .filter(ImportBatch.file_checksum == checksum)
            .order_by(ImportBatch.id.asc())
            .all()
        )
        for candidate in candidates:
            if blocks_reimport(candidate):
                return candidate
        return None

    def admit(
        self,
        data: bytes,
        *,
        filename: str,
        declared_size: int | None,
        config: BatchConfig,
        created_by: str | None = None,
        session_id: int | None = None,
        storage_dir: Path | None = None,
    ) -> ImportBatch:
        """
        Admit an upload as a new PENDING batch.

        Raises ``UploadTooLargeError`` or ``DuplicateFileError``; in both cases
        nothing is stored.
        """

        max_bytes = int(current_app.config.get("IMPORTER_MAX_UPLOAD_MB", 10)) * 1024 * 1024
        actual_size = len(data)
        if actual_size > max_bytes:
            raise UploadTooLargeError(actual_size, max_bytes)
        if declared_size is not None and declared_size != actual_size:
            current_app.logger.warning(
                "Declared size %s for %s does not match received %s bytes; storing actual size",
                declared_size,
                filename,
                actual_size,
                extra={"importer_filename": filename},
            )

        checksum = compute_file_checksum(data)
        existing = self.find_duplicate(checksum)
        if existing is not None:
            record_duplicate_upload()
            current_app.logger.warning(
                "Rejected duplicate upload %s (matches batch %s)",
                filename,
                existing.id,
                extra={"importer_batch_id": existing.id, "importer_checksum": checksum},
            )
            raise DuplicateFileError(checksum, existing.id)

        directory = storage_dir or resolve_upload_directory(current_app)
        stored_path = persist_upload_bytes(data, filename, directory=directory)

        options = config.to_dict()
        batch = ImportBatch(
            import_date=self.clock().date(),
            filename=filename,
            file_size=actual_size,
            file_checksum=checksum,
            total_records=config.total_rows_hint or 0,
            successful_records=0,
            failed_records=0,
            empty_rows_skipped=0,
            user_config=options,
            status=BatchStatus.PENDING,
            abort_requested=False,
            created_by=created_by,
            session_id=session_id,
            ingest_params_json={
                "file_path": str(stored_path),
                "original_filename": filename,
                "declared_size": declared_size,
                **options,
            },
        )
        self.session.add(batch)
        self.session.commit()
        current_app.logger.info(
            "Admitted upload %s as batch %s",
            filename,
            batch.id,
            extra={"importer_batch_id": batch.id, "importer_checksum": checksum},
        )
        return batch
