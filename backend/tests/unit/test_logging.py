"""JSON log lines and context propagation."""
import json
import logging

import pytest

from qssun.config.logging import (
    JsonFormatter,
    RequestContextFilter,
    bind_context,
    request_id_var,
    reset_request_id,
    set_request_id,
)


def _record(msg="Issued serial ORG20240307001", **extra):
    record = logging.LogRecord("qssun.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.unit
def test_json_line_carries_context_fields():
    line = json.loads(JsonFormatter().format(_record(date_key="20240307", user_id=2)))
    assert line["message"] == "Issued serial ORG20240307001"
    assert line["service"] == "qssun-backoffice"
    assert line["date_key"] == "20240307"
    assert line["user_id"] == 2
    assert "request_id" not in line


@pytest.mark.unit
def test_request_id_filter_uses_current_request():
    token = set_request_id("req-42")
    try:
        record = _record()
        RequestContextFilter().filter(record)
    finally:
        reset_request_id(token)
    assert record.request_id == "req-42"
    assert request_id_var.get() is None


@pytest.mark.unit
def test_bind_context_merges_adapters():
    base = logging.getLogger("qssun.test")
    adapter = bind_context(bind_context(base, date_key="20240307"), user_id=3)
    assert adapter.logger is base
    assert adapter.extra == {"date_key": "20240307", "user_id": 3}
    assert bind_context(base) is base
