import logging

from docket_app.utils.logging_config import ContextFormatter, LOG_FORMAT, setup_logging


def _record(**extra):
    record = logging.LogRecord("docket_app.importer", logging.INFO, __file__, 1, "Batch %s finished", (7,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_formatter_appends_importer_fields():
    formatter = ContextFormatter("%(levelname)s %(message)s")

    rendered = formatter.format(_record(importer_status="completed", importer_batch_id=7, importer_task_id=None))

    assert rendered == "INFO Batch 7 finished | importer_batch_id=7 importer_status=completed"


def test_context_formatter_leaves_plain_records_alone():
    formatter = ContextFormatter("%(message)s")

    assert formatter.format(_record(other="ignored")) == "Batch 7 finished"


def test_setup_logging_replaces_its_own_handlers(app, tmp_path):
    app.config.update(LOG_LEVEL="warning", ENABLE_FILE_LOGGING=True, LOG_DIR=str(tmp_path / "logs"))

    setup_logging(app)
    setup_logging(app)

    owned = [handler for handler in app.logger.handlers if isinstance(handler.formatter, ContextFormatter)]
    assert len(owned) == 2
    assert app.logger.level == logging.WARNING
    assert (tmp_path / "logs" / "docket.log").exists()
    assert owned[0].formatter._fmt == LOG_FORMAT
