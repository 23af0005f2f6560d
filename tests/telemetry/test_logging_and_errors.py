from __future__ import annotations

import json
import logging

from starlette.testclient import TestClient

from app.middleware.request_id import _REQUEST_ID
from app.telemetry.logging import JsonFormatter, bind


def _record(logger: logging.LoggerAdapter, msg: str) -> logging.LogRecord:
    captured = []

    class Grab(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            captured.append(record)

    h = Grab()
    logger.logger.addHandler(h)
    try:
        logger.warning(msg, extra={"oracle": "semantic"})
    finally:
        logger.logger.removeHandler(h)
    return captured[0]


def test_json_formatter_includes_bound_context_and_request_id() -> None:
    log = bind(logging.getLogger("tests.logging"), intervention_id="iv-1")
    token = _REQUEST_ID.set("rid-9")
    try:
        rec = _record(log, "oracle failure; failing closed")
        line = json.loads(JsonFormatter().format(rec))
    finally:
        _REQUEST_ID.reset(token)
    assert line["message"] == "oracle failure; failing closed"
    assert line["level"] == "WARNING"
    assert line["intervention_id"] == "iv-1"
    assert line["oracle"] == "semantic"
    assert line["request_id"] == "rid-9"
    assert line["ts"].endswith("Z")


def test_error_bodies_carry_code_and_request_id(client: TestClient) -> None:
    r = client.get("/admin/styles/missing", headers={"X-Request-ID": "rid-e"})
    assert r.status_code == 404
    body = r.json()
    assert body["code"] == "not_found"
    assert body["request_id"] == "rid-e"
    assert r.headers["X-Request-ID"] == "rid-e"


def test_request_id_minted_when_absent(client: TestClient) -> None:
    r = client.get("/livez")
    assert len(r.headers["X-Request-ID"]) == 32


def test_json_formatter_masks_prompts_and_credentials() -> None:
    rec = logging.LogRecord("tests.logging", logging.INFO, __file__, 1, "forwarding", (), None)
    rec.prompt = "draw me something secret"
    rec.headers = {"Authorization": "Bearer t", "accept": "image/png"}
    rec.content = b"\x89PNG...."
    line = json.loads(JsonFormatter().format(rec))
    assert line["prompt"] == "[masked]"
    assert line["headers"] == {"Authorization": "[masked]", "accept": "image/png"}
    assert line["content"] == "<8 bytes>"
