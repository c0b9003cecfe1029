"""
Import session lifecycle.

A session only correlates a user's import interactions. Batches keep their
``session_id`` after the session completes or expires.
"""

from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Any, Mapping

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from docket_app.importer.errors import SessionExpiredError, SessionNotFound
from docket_app.importer.utils import normalize_payload
from docket_app.models import Clock, ImportSession, SessionStatus, as_utc, db, utc_now

DEFAULT_SESSION_TTL_MINUTES = 60


def _default_ttl() -> timedelta:
    minutes = DEFAULT_SESSION_TTL_MINUTES
    if has_app_context():
        minutes = int(current_app.config.get("IMPORTER_SESSION_TTL_MINUTES", DEFAULT_SESSION_TTL_MINUTES))
    return timedelta(minutes=minutes)


class ImportSessionManager:
    def __init__(
        self,
        session: Session | None = None,
        *,
        clock: Clock = utc_now,
        ttl: timedelta | None = None,
    ) -> None:
        self.session = session or db.session
        self.clock = clock
        self.ttl = ttl or _default_ttl()

    def open(self, user_id: str, metadata: Mapping[str, Any] | None = None) -> ImportSession:
        now = self.clock()
        record = ImportSession(
            user_id=str(user_id),
            token=secrets.token_urlsafe(32),
            status=SessionStatus.ACTIVE,
            started_at=now,
            last_activity_at=now,
            expires_at=now + self.ttl,
            metadata_json=normalize_payload(metadata),
        )
        self.session.add(record)
        self.session.commit()
        current_app.logger.info(
            "Opened import session %s for %s",
            record.id,
            record.user_id,
            extra={"importer_session_id": record.id},
        )
        return record

    def _load(self, session_id: int) -> ImportSession:
        record = self.session.get(ImportSession, session_id)
        if record is None:
            raise SessionNotFound(f"Import session {session_id} not found.")
        return record

    def _is_overdue(self, record: ImportSession) -> bool:
        return self.clock() > as_utc(record.expires_at)

    def _mark_expired(self, record: ImportSession) -> None:
        record.status = SessionStatus.EXPIRED
        record.ended_at = self.clock()

    def get(self, session_id: int) -> ImportSession:
        """Load a session, expiring it first when it is past ``expires_at``."""

        record = self._load(session_id)
        if record.status == SessionStatus.ACTIVE and self._is_overdue(record):
            self._mark_expired(record)
            self.session.commit()
        return record

    def touch(self, session_id: int) -> ImportSession:
        record = self.get(session_id)
        if record.status != SessionStatus.ACTIVE:
            raise SessionExpiredError(session_id)
        now = self.clock()
        record.last_activity_at = now
        record.expires_at = now + self.ttl
        self.session.commit()
        return record

    def expire(self, session_id: int) -> ImportSession:
        record = self._load(session_id)
        if record.status == SessionStatus.ACTIVE:
            self._mark_expired(record)
            self.session.commit()
        return record

    def complete(self, session_id: int) -> ImportSession:
        record = self.get(session_id)
        if record.status == SessionStatus.EXPIRED:
            raise SessionExpiredError(session_id)
        if record.status == SessionStatus.ACTIVE:
            record.status = SessionStatus.COMPLETED
            record.ended_at = self.clock()
            self.session.commit()
        return record

    def expire_stale(self) -> int:
        """Expire every ACTIVE session whose deadline has passed."""

        now = self.clock()
        expired = 0
        for record in self.session.query(ImportSession).filter(ImportSession.status == SessionStatus.ACTIVE).all():
            if now > as_utc(record.expires_at):
                record.status = SessionStatus.EXPIRED
                record.ended_at = now
                expired += 1
        if expired:
            self.session.commit()
            current_app.logger.info("Expired %s stale import sessions", expired)
        return expired


def serialize_session(record: ImportSession) -> dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "status": record.status.value if isinstance(record.status, SessionStatus) else str(record.status),
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "last_activity_at": record.last_activity_at.isoformat() if record.last_activity_at else None,
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        "ended_at": record.ended_at.isoformat() if record.ended_at else None,
        "metadata": record.metadata_json or {},
    }
