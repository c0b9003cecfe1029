import json
from datetime import timedelta
from unittest.mock import Mock

import pytest

from docket_app.importer import cli as importer_cli_module
from docket_app.importer.pipeline.sessions import ImportSessionManager
from docket_app.models import BatchStatus, ImportBatch, ImportSession, SessionStatus, ValidationPreview, db


@pytest.fixture
def csv_file(tmp_path, csv_factory, row_factory):
    def _write(rows=None, name="returns.csv"):
        path = tmp_path / name
        path.write_bytes(csv_factory(rows if rows is not None else [row_factory()]))
        return path

    return _write


def _only_batch():
    db.session.expire_all()
    return db.session.query(ImportBatch).one()


def test_run_inline_processes_the_file(runner, csv_file, reference_data, row_factory):
    path = csv_file([row_factory(), row_factory(caseid_no="E002", outcome="")])

    result = runner.invoke(args=["importer", "run", "--file", str(path), "--inline", "--created-by", "clerk"])

    assert result.exit_code == 0, result.output
    batch = _only_batch()
    assert f"Batch {batch.id} (returns.csv) status=completed" in result.output
    assert batch.successful_records == 1
    assert batch.failed_records == 1
    assert batch.created_by == "clerk"


def test_run_dry_run_prints_preview_without_batch(runner, csv_file):
    result = runner.invoke(args=["importer", "run", "--file", str(csv_file()), "--dry-run"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["valid_rows"] == 1
    assert db.session.query(ImportBatch).count() == 0
    assert db.session.query(ValidationPreview).count() == 1


def test_run_queues_batch_on_worker(runner, csv_file, monkeypatch):
    celery_app = Mock()
    celery_app.send_task.return_value.id = "task-123"
    monkeypatch.setattr(importer_cli_module, "_resolve_celery", lambda app: celery_app)

    result = runner.invoke(args=["importer", "run", "--file", str(csv_file()), "--no-auto-create"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    batch = _only_batch()
    assert payload == {"batch_id": batch.id, "task_id": "task-123", "status": "queued"}
    assert batch.status == BatchStatus.PENDING
    assert batch.user_config["auto_create_references"] is False
    celery_app.send_task.assert_called_once_with("importer.pipeline.process_batch", kwargs={"batch_id": batch.id})


def test_run_rejects_duplicate_file(runner, csv_file, batch_factory):
    batch_factory()

    result = runner.invoke(args=["importer", "run", "--file", str(csv_file()), "--inline"])

    assert result.exit_code == 1
    assert "was already imported as batch" in result.output


def test_process_and_status_commands(runner, batch_factory, reference_data):
    batch = batch_factory()

    processed = runner.invoke(args=["importer", "process", str(batch.id)])
    status = runner.invoke(args=["importer", "status", str(batch.id)])
    as_json = runner.invoke(args=["importer", "status", str(batch.id), "--json"])

    assert processed.exit_code == 0, processed.output
    assert "status=completed" in processed.output
    assert status.exit_code == 0
    assert "progress          : completed 100% (1/1)" in status.output
    assert json.loads(as_json.output)["progress"]["step"] == "completed"


def test_status_of_unknown_batch_fails(runner):
    result = runner.invoke(args=["importer", "status", "404"])

    assert result.exit_code == 1
    assert "404" in result.output


def test_errors_and_resolve_error_commands(runner, controller, batch_factory, reference_data, row_factory):
    batch = batch_factory([row_factory(outcome=""), row_factory(caseid_no="E002", case_status="Actve")])
    controller.process(batch.id)

    listed = runner.invoke(args=["importer", "errors", str(batch.id), "--severity", "error"])
    payload = json.loads(listed.output)
    assert payload["total"] == 1
    error = payload["items"][0]
    assert error["column_name"] == "outcome"

    resolved = runner.invoke(args=["importer", "resolve-error", str(error["id"]), "--by", "clerk"])
    assert json.loads(resolved.output)["is_resolved"] is True

    unresolved = runner.invoke(args=["importer", "errors", str(batch.id), "--unresolved"])
    assert json.loads(unresolved.output)["total"] == 1

    bad = runner.invoke(args=["importer", "errors", str(batch.id), "--severity", "fatal"])
    assert bad.exit_code == 1


def test_abort_and_cleanup_commands(runner, controller, batch_factory, reference_data, row_factory):
    pending = batch_factory()
    finished = batch_factory([row_factory(caseid_no="E009")], filename="other.csv")
    controller.process(finished.id)

    aborted = runner.invoke(args=["importer", "abort", str(pending.id)])
    abort_finished = runner.invoke(args=["importer", "abort", str(finished.id)])
    cleaned = runner.invoke(args=["importer", "cleanup", str(finished.id)])

    assert aborted.output.strip() == f"Abort requested for batch {pending.id}."
    assert abort_finished.exit_code == 1
    assert cleaned.output.strip() == f"Batch {finished.id} archived (was completed)."

    controller.process(pending.id)
    failed = runner.invoke(args=["importer", "cleanup", "--failed"])
    assert failed.output.strip() == "Archived 1 failed batch(es)."

    missing_arg = runner.invoke(args=["importer", "cleanup"])
    assert missing_arg.exit_code == 1


def test_history_lists_batches(runner, batch_factory, row_factory):
    batch_factory(filename="nairobi.csv")
    batch_factory([row_factory(caseid_no="E002")], filename="mombasa.csv")

    result = runner.invoke(args=["importer", "history", "--search", "mombasa"])

    payload = json.loads(result.output)
    assert payload["total"] == 1
    assert payload["items"][0]["filename"] == "mombasa.csv"


def test_expire_sessions_command(runner, app, clock):
    stale = ImportSessionManager(clock=clock, ttl=timedelta(minutes=1)).open("clerk-1")

    result = runner.invoke(args=["importer", "expire-sessions"])

    assert result.output.strip() == "Expired 1 import session(s)."
    db.session.expire_all()
    assert db.session.get(ImportSession, stale.id).status == SessionStatus.EXPIRED
