from __future__ import annotations

import io
import json
import logging

import pytest

from plugindb.core.logging import (
    LIBRARY_LOGGER,
    JsonFormatter,
    configure_logging,
    correlation_context,
    get_correlation_id,
    get_logger,
)


def _record(message: str, **structured) -> logging.LogRecord:
    record = logging.LogRecord("plugindb.test", logging.INFO, __file__, 1, message, None, None)
    if structured:
        record.structured_data = structured
    return record


def test_json_formatter_merges_structured_data():
    payload = json.loads(JsonFormatter().format(_record("session_factory_built", pool_size=5)))
    assert payload["message"] == "session_factory_built"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "plugindb.test"
    assert payload["pool_size"] == 5
    assert "correlation_id" not in payload


def test_correlation_context_binds_and_resets():
    assert get_correlation_id() is None
    with correlation_context("tick-42") as cid:
        assert cid == "tick-42"
        payload = json.loads(JsonFormatter().format(_record("inside")))
        assert payload["correlation_id"] == "tick-42"
    assert get_correlation_id() is None


def test_structured_adapter_merges_defaults_and_call_fields(caplog):
    logger = get_logger("plugindb.test.adapter", component="repository")
    with caplog.at_level(logging.INFO, logger="plugindb.test.adapter"):
        logger.info("delete_no_match", extra={"structured_data": {"entity": "Player"}})
    record = caplog.records[-1]
    assert record.structured_data == {"component": "repository", "entity": "Player"}


def test_rollback_is_logged(factory, caplog):
    with caplog.at_level(logging.WARNING, logger="plugindb.db.connection"):
        try:
            with factory.transaction():
                raise RuntimeError("tick failed")
        except RuntimeError:
            pass
    messages = [record.getMessage() for record in caplog.records]
    assert "transaction_rollback" in messages
    rollback = next(r for r in caplog.records if r.getMessage() == "transaction_rollback")
    assert rollback.structured_data["error_type"] == "RuntimeError"


@pytest.fixture()
def library_logger():
    library = logging.getLogger(LIBRARY_LOGGER)
    handlers, level, propagate = list(library.handlers), library.level, library.propagate
    yield library
    library.handlers[:] = handlers
    library.setLevel(level)
    library.propagate = propagate


def test_configure_logging_writes_json_for_the_library_only(library_logger):
    stream = io.StringIO()
    root_handlers = list(logging.getLogger().handlers)

    handler = configure_logging(level="debug", stream=stream)
    assert configure_logging(level="error") is handler
    assert logging.getLogger().handlers == root_handlers
    assert library_logger.level == logging.DEBUG

    get_logger("plugindb.db.connection", component="connection").debug(
        "session_factory_built", extra={"structured_data": {"pool_size": 2}}
    )
    payload = json.loads(stream.getvalue().splitlines()[-1])
    assert payload["message"] == "session_factory_built"
    assert payload["component"] == "connection"
    assert payload["pool_size"] == 2


def test_prod_environment_keeps_info_floor(library_logger):
    configure_logging(level=logging.DEBUG, environment="prod", stream=io.StringIO())
    assert library_logger.level == logging.INFO
