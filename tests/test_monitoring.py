"""Tests for monitoring: request timing headers and structured log formatting."""

import json
import logging

from app.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(**extra):
    record = logging.LogRecord(
        name="app.services.checklist_service", level=logging.INFO, pathname=__file__,
        lineno=10, msg="Checklist %s composed", args=("c-1",), exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRequestTiming:
    """Request timing middleware tests."""

    def test_duration_header_present(self, client):
        res = client.get("/api/v1/health/ready")
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_request_id_generated(self, client):
        res = client.get("/api/v1/health/ready")
        assert len(res.headers["X-Request-ID"]) == 12

    def test_request_id_preserved(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "audit-42"})
        assert res.headers["X-Request-ID"] == "audit-42"

    def test_checklist_requests_logged_with_context(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger="app.middleware.timing"):
            client.get("/api/v1/checklists/missing")
        record = next(r for r in caplog.records if r.name == "app.middleware.timing")
        assert record.checklist_id == "missing"
        assert record.status == 404


class TestFormatters:

    def test_json_formatter_includes_domain_context(self):
        line = JSONFormatter().format(_record(checklist_id="c-1", event_type="compose"))
        entry = json.loads(line)
        assert entry["message"] == "Checklist c-1 composed"
        assert entry["checklist_id"] == "c-1"
        assert entry["event_type"] == "compose"
        assert "item_id" not in entry

    def test_readable_formatter_appends_checklist(self):
        line = ReadableFormatter().format(_record(checklist_id="c-1", duration_ms=12.4))
        assert "(checklist=c-1)" in line
        assert "[12ms]" in line

    def test_readable_formatter_labels_item_and_event(self):
        line = ReadableFormatter().format(
            _record(checklist_id="c-1", item_id="i-9", event_type="response.approve"),
        )
        assert "(checklist=c-1 item=i-9 event=response.approve)" in line
        assert "ms]" not in line
