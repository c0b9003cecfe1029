# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so the config classes pick it up
os.environ["FLASK_ENV"] = "testing"

from app import create_app  # noqa: E402
from config import TestingConfig  # noqa: E402
from docket_app.models import db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create an application bound to a throwaway SQLite file.

    Row workers open their own connections from pool threads, so the database
    has to be a real file rather than ``:memory:``.
    """
    database_path = (tmp_path / "docket_test.db").as_posix()
    flask_app = create_app(
        TestingConfig,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{database_path}",
        IMPORTER_ENABLED=True,
        IMPORTER_WORKER_ENABLED=False,
        IMPORTER_UPLOAD_DIR=str(tmp_path / "uploads"),
        IMPORTER_MAX_WORKERS=2,
        IMPORTER_PROGRESS_FLUSH_ROWS=5,
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
        ENABLE_FILE_LOGGING=False,
        LOG_LEVEL="DEBUG",
    )

    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner"""
    return app.test_cli_runner()
