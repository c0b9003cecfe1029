# docket_app/models/base.py
"""
Shared SQLAlchemy handle and abstract model base.
"""

from datetime import datetime, timezone
from typing import Callable

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BaseModel(db.Model):
    """Abstract base adding audit timestamps to every table."""

    __abstract__ = True

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back out; reattach UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
