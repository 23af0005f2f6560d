"""Global JSON error handling with stable error codes and request correlation."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.middleware.request_id import REQUEST_ID_HEADER, get_request_id
from app.services.errors import InvalidTransaction, StoreUnavailable, StyleNotFound
from app.utils.cursor import CursorError

log = logging.getLogger(__name__)

# Map common HTTP statuses to stable machine-readable codes
_STATUS_TO_CODE = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    413: "payload_too_large",
    415: "unsupported_media_type",
    422: "validation_error",
    429: "rate_limited",
    503: "service_unavailable",
}


def _rid_from_request(request: Request) -> str:
    return get_request_id() or request.headers.get(REQUEST_ID_HEADER) or uuid4().hex


def json_error(
    request: Request,
    *,
    detail: str,
    status: int,
    code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    rid = _rid_from_request(request)
    body: Dict[str, Any] = {
        "detail": detail,
        "code": code or _STATUS_TO_CODE.get(status, "error"),
        "request_id": rid,
    }
    if extra:
        body.update(extra)
    resp = JSONResponse(status_code=status, content=jsonable_encoder(body))
    resp.headers[REQUEST_ID_HEADER] = rid
    return resp


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        return json_error(request, detail=detail, status=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return json_error(
            request,
            detail="Validation failed",
            status=422,
            code="validation_error",
            extra={"errors": exc.errors()},
        )

    @app.exception_handler(InvalidTransaction)
    async def invalid_txn_handler(request: Request, exc: InvalidTransaction) -> JSONResponse:
        return json_error(request, detail=str(exc), status=422, code="validation_error")

    @app.exception_handler(CursorError)
    async def cursor_handler(request: Request, exc: CursorError) -> JSONResponse:
        return json_error(request, detail=str(exc), status=400, code="bad_request")

    @app.exception_handler(StyleNotFound)
    async def style_missing_handler(request: Request, exc: StyleNotFound) -> JSONResponse:
        return json_error(request, detail=f"style {exc.args[0]!r} not found", status=404)

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
        log.error("store unavailable", extra={"error": str(exc)})
        return json_error(request, detail="store temporarily unavailable", status=503)

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception) -> JSONResponse:
        # Do not leak internals; logs carry the details correlated by request_id.
        log.exception("unhandled error", exc_info=exc)
        return json_error(
            request,
            detail="Internal server error",
            status=500,
            code="internal_error",
        )
