from datetime import timedelta

import pytest

from docket_app.importer.errors import SessionExpiredError, SessionNotFound
from docket_app.importer.pipeline.sessions import ImportSessionManager, serialize_session
from docket_app.models import SessionStatus, as_utc


@pytest.fixture
def manager(app, clock):
    return ImportSessionManager(clock=clock, ttl=timedelta(minutes=30))


def test_open_issues_active_session_with_deadline(manager, clock):
    record = manager.open("clerk-1", {"court": "Milimani"})

    assert record.status == SessionStatus.ACTIVE
    assert as_utc(record.expires_at) == clock() + timedelta(minutes=30)
    assert len(record.token) >= 32
    payload = serialize_session(record)
    assert payload["user_id"] == "clerk-1"
    assert payload["metadata"] == {"court": "Milimani"}


def test_touch_extends_the_deadline(manager, clock):
    record = manager.open("clerk-1")
    clock.advance(minutes=20)

    touched = manager.touch(record.id)

    assert as_utc(touched.last_activity_at) == clock()
    assert as_utc(touched.expires_at) == clock() + timedelta(minutes=30)


def test_overdue_session_expires_on_read(manager, clock):
    record = manager.open("clerk-1")
    clock.advance(minutes=31)

    loaded = manager.get(record.id)

    assert loaded.status == SessionStatus.EXPIRED
    assert as_utc(loaded.ended_at) == clock()
    with pytest.raises(SessionExpiredError):
        manager.touch(record.id)
    with pytest.raises(SessionExpiredError):
        manager.complete(record.id)


def test_complete_and_expire_are_terminal(manager):
    completed = manager.complete(manager.open("clerk-1").id)
    assert completed.status == SessionStatus.COMPLETED
    assert manager.expire(completed.id).status == SessionStatus.COMPLETED

    expired = manager.expire(manager.open("clerk-2").id)
    assert expired.status == SessionStatus.EXPIRED


def test_expire_stale_only_touches_overdue_sessions(manager, clock):
    stale = manager.open("clerk-1")
    clock.advance(minutes=20)
    fresh = manager.open("clerk-2")
    clock.advance(minutes=15)

    assert manager.expire_stale() == 1
    assert manager.get(stale.id).status == SessionStatus.EXPIRED
    assert manager.get(fresh.id).status == SessionStatus.ACTIVE
    assert manager.expire_stale() == 0


def test_unknown_session_raises(manager):
    with pytest.raises(SessionNotFound):
        manager.get(12345)


def test_ttl_defaults_to_config(app, clock):
    app.config["IMPORTER_SESSION_TTL_MINUTES"] = 5

    assert ImportSessionManager(clock=clock).ttl == timedelta(minutes=5)
