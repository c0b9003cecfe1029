from datetime import timedelta

from docket_app.importer.celery_app import DEFAULT_QUEUE_NAME, create_celery_app, get_celery_app
from docket_app.importer.pipeline.sessions import ImportSessionManager
from docket_app.importer.pipeline.validation import PreviewService
from docket_app.models import BatchStatus, ImportBatch, ImportSession, SessionStatus, ValidationPreview, db


def _task(app, name):
    return get_celery_app(app).tasks[name]


def test_celery_app_is_configured_for_import_queue(app):
    celery_app = get_celery_app(app)

    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert [queue.name for queue in celery_app.conf.task_queues] == [DEFAULT_QUEUE_NAME]
    assert celery_app.conf.task_acks_late is True
    assert celery_app.conf.task_always_eager is True
    assert set(celery_app.conf.beat_schedule) == {"importer-expire-sessions", "importer-purge-previews"}
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert celery_app.conf.broker_url.endswith("celery.sqlite")
    assert "importer.pipeline.process_batch" in celery_app.tasks


def test_explicit_broker_and_json_config_are_honoured(app):
    app.config.update(
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
        CELERY_CONFIG='{"worker_prefetch_multiplier": 4}',
    )

    celery_app = create_celery_app(app)

    assert celery_app.conf.broker_url == "redis://localhost:6379/0"
    assert celery_app.conf.worker_prefetch_multiplier == 4


def test_process_batch_task_runs_the_batch(app, batch_factory, reference_data, row_factory):
    batch = batch_factory([row_factory(), row_factory(caseid_no="E002")])

    result = _task(app, "importer.pipeline.process_batch").apply(kwargs={"batch_id": batch.id}).get()

    assert result["status"] == "completed"
    assert result["succeeded_rows"] == 2
    db.session.expire_all()
    assert db.session.get(ImportBatch, batch.id).status == BatchStatus.COMPLETED


def test_healthcheck_task(app):
    payload = _task(app, "importer.healthcheck").apply().get()

    assert payload["status"] == "ok"
    assert payload["timestamp"]


def test_maintenance_tasks(app, clock, csv_factory, row_factory):
    session = ImportSessionManager(clock=clock, ttl=timedelta(minutes=5)).open("clerk-1")
    PreviewService(clock=clock, ttl_minutes=5).create(csv_factory([row_factory()]), filename="returns.csv")

    expired = _task(app, "importer.maintenance.expire_sessions").apply().get()
    purged = _task(app, "importer.maintenance.purge_previews").apply().get()

    assert expired == {"expired": 1}
    assert purged == {"purged": 1}
    db.session.expire_all()
    assert db.session.get(ImportSession, session.id).status == SessionStatus.EXPIRED
    assert db.session.query(ValidationPreview).count() == 0
