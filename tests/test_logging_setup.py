from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from careroster.logging_setup import LOG_FORMAT, KeyValueFormatter, configure_logging, get_logger  # noqa: E402


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("careroster.budget", logging.INFO, "/srv/careroster/budget.py", 42, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_extra_fields_are_appended_in_key_order():
    formatter = KeyValueFormatter("%(levelname)s in %(module)s: %(message)s")
    line = formatter.format(_record("budget deduction applied", shift_id=4, amount=520.0))
    assert line == "INFO in budget: budget deduction applied amount=520.0 shift_id=4"


def test_plain_records_get_no_suffix():
    formatter = KeyValueFormatter(LOG_FORMAT)
    record = _record("server started")
    assert formatter.format(record) == logging.Formatter(LOG_FORMAT).format(record)


def test_private_attributes_are_not_rendered():
    formatter = KeyValueFormatter("%(message)s")
    assert formatter.format(_record("ready", _internal="skip", rows=3)) == "ready rows=3"


@pytest.fixture()
def clean_root():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    root.handlers = []
    yield root
    root.handlers = saved_handlers
    root.setLevel(saved_level)


def test_configure_logging_installs_one_handler(clean_root):
    configure_logging("DEBUG")
    configure_logging("DEBUG")
    installed = [h for h in clean_root.handlers if isinstance(h.formatter, KeyValueFormatter)]
    assert len(installed) == 1
    assert clean_root.level == logging.DEBUG


def test_get_logger_prefers_injected_logger():
    injected = logging.getLogger("careroster.tests.injected")
    assert get_logger("careroster.shifts", injected) is injected
    assert get_logger("careroster.shifts").name == "careroster.shifts"
