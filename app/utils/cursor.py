from __future__ import annotations

import base64
import json
from typing import Tuple


class CursorError(ValueError):
    """Raised when a continuation token cannot be decoded."""


def encode_cursor(ts_ms: int, record_id: str) -> str:
    """Opaque, URL-safe continuation token for the last record of a page."""

    raw = json.dumps({"ts": int(ts_ms), "id": str(record_id)}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> Tuple[int, str]:
    if not token:
        raise CursorError("empty cursor")
    pad = "=" * (-len(token) % 4)
    try:
        obj = json.loads(base64.urlsafe_b64decode((token + pad).encode("ascii")).decode("utf-8"))
        return int(obj["ts"]), str(obj["id"])
    except Exception as exc:
        raise CursorError(f"invalid cursor: {exc}") from exc


def after_cursor(ts_ms: int, record_id: str, cursor: Tuple[int, str] | None) -> bool:
    """True if ``(ts_ms, record_id)`` sorts strictly after ``cursor``."""

    if cursor is None:
        return True
    return (ts_ms, record_id) > cursor
