"""
Logging and configuration tests — formatter output, request context and
environment-driven settings.
"""

import json
import logging

from flask import Flask, g

from peer_review.config import database_url
from peer_review.middleware.logging_config import (
    JSONFormatter,
    ReadableFormatter,
    RequestContextFilter,
    resolve_format,
)


def _record(msg="Fieldwork completed", **extra):
    record = logging.LogRecord("peer_review.services", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_carries_gating_context():
    record = _record(review_id=7, item_code="SITE_FACILITIES", event_type="checklist.override_added")
    entry = json.loads(JSONFormatter("gating-test").format(record))
    assert entry["service"] == "gating-test"
    assert entry["message"] == "Fieldwork completed"
    assert entry["review_id"] == 7
    assert entry["item_code"] == "SITE_FACILITIES"
    assert "cap_id" not in entry


def test_readable_formatter_appends_context():
    line = ReadableFormatter().format(_record(review_id=7, event_type="review.fieldwork_completed"))
    assert line.endswith("| event_type=review.fieldwork_completed review_id=7")


def test_request_context_filter_fills_request_id(app):
    with app.test_request_context("/api/v1/reviews/1/checklist"):
        g.request_id = "abc123"
        g.actor = None
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert record.request_id == "abc123"
        assert record.actor_id is None


def test_request_context_filter_keeps_explicit_actor(app):
    with app.test_request_context("/"):
        g.actor = None
        record = _record(actor_id=42)
        RequestContextFilter().filter(record)
        assert record.actor_id == 42


def test_resolve_format():
    app = Flask(__name__)
    app.config.update(DEBUG=False, TESTING=False, LOG_FORMAT=None)
    assert resolve_format(app) == "json"
    app.config["TESTING"] = True
    assert resolve_format(app) == "readable"
    app.config["LOG_FORMAT"] = "JSON"
    assert resolve_format(app) == "json"


def test_database_url_accepts_legacy_scheme(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db/peer")
    assert database_url("DATABASE_URL") == "postgresql://u:p@db/peer"
    monkeypatch.delenv("DATABASE_URL")
    assert database_url("DATABASE_URL", "sqlite://") == "sqlite://"


def test_testing_config(app):
    assert app.config["TESTING"] is True
    assert app.config["RATELIMIT_ENABLED"] is False
    assert app.config["COI_RECENT_REVIEW_COOLDOWN_DAYS"] == 730
