# app/telemetry/logging.py
# JSON line logging for the guardrail:
# - One object per line, UTC timestamps, request id stamped from the
#   RequestIDMiddleware context.
# - Prompts, payload bodies and caller credentials are masked even when a call
#   site passes them in ``extra=``; the audit trail is the place for prompts.
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, MutableMapping, Tuple

from app.middleware.request_id import get_request_id

MASKED = "[masked]"

# Keys whose values never reach a log line.
SENSITIVE_KEYS = frozenset(
    {"prompt", "payload", "body", "authorization", "x-api-key", "api_key", "auth_context"}
)

# Attributes every LogRecord carries; anything else came in via ``extra=``.
_RECORD_ATTRS: frozenset = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _utc_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _scrub(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool, type(None))):
        return value
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, Mapping):
        return {
            str(k): MASKED if str(k).lower() in SENSITIVE_KEYS else _scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_scrub(v) for v in value]
    return str(value)


class JsonFormatter(logging.Formatter):
    """Formats a record as ``{"ts", "level", "logger", "message", ...extra}``."""

    def format(self, record: logging.LogRecord) -> str:
        extra = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RECORD_ATTRS and not k.startswith("_")
        }
        line: Dict[str, Any] = {
            "ts": _utc_iso(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = extra.pop("request_id", None) or get_request_id()
        if rid:
            line["request_id"] = rid
        line.update(_scrub(extra))
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False)


_configured = False


def configure_root_logging(level: int | str = "INFO", json_lines: bool = True) -> None:
    """Install a single stdout handler on the root logger; later calls are no-ops."""
    global _configured
    if _configured:
        return

    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    for h in list(root.handlers):
        root.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(
        JsonFormatter()
        if json_lines
        else logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    root.addHandler(handler)
    _configured = True


class ContextAdapter(logging.LoggerAdapter):
    """Adds bound keys (request_id, intervention_id) to every line; per-call
    ``extra`` wins on conflicts."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        merged = dict(self.extra or {})
        merged.update(kwargs.get("extra") or {})
        kwargs["extra"] = merged
        return msg, kwargs


def bind(logger: logging.Logger | None = None, **context: Any) -> ContextAdapter:
    """
        tlog = bind(log, request_id=rid, intervention_id=iid)
        tlog.warning("oracle failure; failing closed", extra={"oracle": "semantic"})
    """
    return ContextAdapter(logger or logging.getLogger(), context)
