import json
import logging

import pytest

from mnee_indexer.logging_config import CustomJsonFormatter, setup_logging


@pytest.fixture
def restore_logger():
    yield
    logger = logging.getLogger("mnee_indexer.test_logging")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


def _record(**extra):
    record = logging.LogRecord(
        name="mnee_indexer.sync",
        level=logging.INFO,
        pathname=__file__,
        lineno=12,
        msg="Processed blocks %s-%s",
        args=(0, 100),
        exc_info=None,
        func="run_once",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_structured_fields():
    formatter = CustomJsonFormatter(environment="test")

    payload = json.loads(formatter.format(_record(event="sync.range_processed", placed=1)))

    assert payload["message"] == "Processed blocks 0-100"
    assert payload["event"] == "sync.range_processed"
    assert payload["placed"] == 1
    assert payload["environment"] == "test"
    assert payload["service"] == "mnee_indexer"
    assert payload["level"] == "info"
    assert payload["timestamp"].endswith("Z")
    assert payload["source"]["function"] == "run_once"


def test_setup_logging_writes_json_file(tmp_path, restore_logger):
    log_file = tmp_path / "logs" / "indexer.json"

    logger = setup_logging(
        name="mnee_indexer.test_logging",
        log_file=str(log_file),
        level="DEBUG",
        environment="test",
        enable_console=False,
    )
    logger.info("hello", extra={"event": "test.hello"})
    for handler in logger.handlers:
        handler.flush()

    line = json.loads(log_file.read_text().strip().splitlines()[-1])
    assert line["event"] == "test.hello"
    assert line["service"] == "mnee_indexer"


def test_setup_logging_is_idempotent(restore_logger):
    setup_logging(name="mnee_indexer.test_logging", level="INFO")
    logger = setup_logging(name="mnee_indexer.test_logging", level="INFO")

    assert len(logger.handlers) == 1
    assert logger.propagate is False
