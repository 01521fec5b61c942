"""
Tests for structured logging setup.
"""

import io
import json
import logging
import types

import pytest

from callbilling.shared import logging as billing_logging
from callbilling.shared.logging import get_logger, setup_logging


@pytest.fixture
def root_stream(monkeypatch: pytest.MonkeyPatch):
    """Run setup_logging against a captured stdout and restore the root logger after."""
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    stream = io.StringIO()
    monkeypatch.setattr(billing_logging, "sys", types.SimpleNamespace(stdout=stream))
    yield stream
    root.handlers = saved_handlers
    root.setLevel(saved_level)


def test_module_logger_writes_each_line_once(root_stream: io.StringIO) -> None:
    # created before setup, like module-level loggers at import time
    logger = get_logger("callbilling.tests.import_time")
    setup_logging()

    logger.warning("Balance low", extra={"user_id": "u-1"})

    lines = [line for line in root_stream.getvalue().splitlines() if line]
    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["message"] == "Balance low"
    assert payload["user_id"] == "u-1"
    assert payload["logger"] == "callbilling.tests.import_time"
    assert logger.handlers == []


def test_correlation_id_is_attached(root_stream: io.StringIO) -> None:
    setup_logging()
    token = billing_logging.correlation_id_var.set("billing-abc")
    try:
        get_logger("callbilling.tests.correlation").warning("Cycle done")
    finally:
        billing_logging.correlation_id_var.reset(token)

    payload = json.loads(root_stream.getvalue().splitlines()[-1])
    assert payload["correlation_id"] == "billing-abc"
