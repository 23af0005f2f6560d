from __future__ import annotations

import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"


def get_request_id() -> Optional[str]:
    """Current request id (if any) set by RequestIDMiddleware."""
    return _REQUEST_ID.get()


def resolve_request_id(raw: Optional[str]) -> str:
    trimmed = (raw or "").strip()
    return trimmed[:128] if trimmed else uuid.uuid4().hex


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Accepts an inbound X-Request-ID or mints one, exposes it through a
    contextvar for logging and the transaction, and echoes it on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = _REQUEST_ID.set(rid)
        try:
            request.state.request_id = rid
            response: Response = await call_next(request)
        finally:
            # Always reset to avoid leakage across requests.
            _REQUEST_ID.reset(token)
        response.headers.setdefault(REQUEST_ID_HEADER, rid)
        return response
