"""Tests for root logging setup."""

import io
import json
import logging

import pytest

from xp_ledger.logging_config import configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_format_emits_one_object_per_line():
    stream = io.StringIO()
    configure_logging("INFO", "json", stream=stream)

    logging.getLogger("xp_ledger.test").info("sent %d", 3)

    event = json.loads(stream.getvalue().strip())
    assert event["lvl"] == "INFO"
    assert event["logger"] == "xp_ledger.test"
    assert event["msg"] == "sent 3"


def test_simple_format_and_level_filter():
    stream = io.StringIO()
    configure_logging("warning", "simple", stream=stream)

    logging.getLogger("xp_ledger.test").info("hidden")
    logging.getLogger("xp_ledger.test").warning("shown")

    assert stream.getvalue() == "WARNING shown\n"


def test_single_root_handler_and_quiet_httpx():
    configure_logging("DEBUG", "detailed", stream=io.StringIO())
    configure_logging("DEBUG", "detailed", stream=io.StringIO())

    assert len(logging.getLogger().handlers) == 1
    assert logging.getLogger("httpx").level == logging.WARNING
