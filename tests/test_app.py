"""
UAT Hub
Tests: app factory, logging and shared helpers.
"""

import json
import logging
from datetime import datetime, timezone

from flask import g

from uathub.middleware.logging_config import JSONFormatter, ReadableFormatter, RequestContextFilter
from uathub.models.uat import validate_session_transition
from uathub.utils.helpers import parse_datetime


class TestAppFactory:
    def test_testing_config(self, app):
        assert app.config["TESTING"] is True
        assert app.config["SQLALCHEMY_DATABASE_URI"] == "sqlite:///:memory:"

    def test_blueprints_registered(self, app):
        assert {"uat", "portal"} <= set(app.blueprints)

    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/nope")
        assert res.status_code == 404
        assert res.get_json()["error"] == "Not found"

    def test_request_id_header(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
        assert res.headers.get("X-Request-ID") == "req-123"


class TestJSONFormatter:
    def test_extra_keys_are_emitted(self):
        record = logging.LogRecord("uathub.test", logging.INFO, __file__, 10,
                                   "Step %s recorded", (7,), None)
        record.run_id = 3
        record.actor_type = "guest"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Step 7 recorded"
        assert entry["run_id"] == 3
        assert entry["actor_type"] == "guest"
        assert "session_id" not in entry

    def test_filter_outside_request_is_noop(self):
        record = logging.LogRecord("uathub.test", logging.INFO, __file__, 1, "hi", (), None)
        assert RequestContextFilter().filter(record) is True
        assert getattr(record, "request_id", None) is None

    def test_filter_stamps_request_id(self, app):
        record = logging.LogRecord("uathub.test", logging.INFO, __file__, 1, "hi", (), None)
        with app.test_request_context("/api/v1/health"):
            g.request_id = "abc123"
            RequestContextFilter().filter(record)
        assert record.request_id == "abc123"
        assert "[abc123]" in ReadableFormatter().format(record)


class TestHelpers:
    def test_parse_iso(self):
        assert parse_datetime("2026-03-04T10:00:00Z") == datetime(2026, 3, 4, 10, tzinfo=timezone.utc)

    def test_parse_dotted(self):
        assert parse_datetime("04.03.2026") == datetime(2026, 3, 4, tzinfo=timezone.utc)

    def test_parse_garbage(self):
        assert parse_datetime("next tuesday") is None
        assert parse_datetime("") is None

    def test_session_transitions(self):
        assert validate_session_transition("draft", "active")
        assert validate_session_transition("closed", "active")
        assert not validate_session_transition("active", "draft")
