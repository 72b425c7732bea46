"""Tests for structured logging and request_id propagation."""

import json
import logging

from sceneaccess.conftest import auth_headers
from sceneaccess.core.logging import JsonFormatter, RequestIdFilter, request_id_ctx_var


def test_request_id_in_response_and_logs(client, caplog):
    with caplog.at_level(logging.INFO, logger="sceneaccess"):
        response = client.post("/api/access/check", json={"sceneId": "scene_1"}, headers=auth_headers("alice"))
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert any(r.getMessage() == "request.complete" for r in records)


def test_access_checks_are_logged_with_decision(client, caplog):
    with caplog.at_level(logging.INFO, logger="sceneaccess"):
        client.post("/api/access/check", json={"sceneId": "scene_1"}, headers=auth_headers("alice"))
    [record] = [r for r in caplog.records if r.getMessage() == "access.checked"]
    assert record.user_id == "alice"
    assert record.scene_id == "scene_1"
    assert record.access_type == "none"


def test_origin_rejection_logs_reason(client, caplog):
    with caplog.at_level(logging.WARNING, logger="sceneaccess"):
        client.post("/api/access/check", json={"sceneId": "scene_1"}, headers={"Origin": "https://evil.example.com"})
    [record] = [r for r in caplog.records if r.getMessage() == "perimeter.origin_rejected"]
    assert record.reason == "bad_origin"


def test_json_formatter_includes_context_and_extras():
    token = request_id_ctx_var.set("rid-123")
    try:
        record = logging.LogRecord("sceneaccess", logging.INFO, __file__, 1, "access.checked", None, None)
        record.user_id = "alice"
        record.access_type = "purchase"
        RequestIdFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["request_id"] == "rid-123"
    assert payload["message"] == "access.checked"
    assert payload["user_id"] == "alice"
    assert payload["access_type"] == "purchase"
    assert "scene_id" not in payload
