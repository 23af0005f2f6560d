# app/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from app.config import Settings, get_settings
from app.middleware.request_id import RequestIDMiddleware
from app.routes import admin_audit, admin_styles, admin_thresholds, health, intercept, metrics
from app.runtime import Runtime, build_runtime
from app.telemetry.errors import register_error_handlers
from app.telemetry.logging import configure_root_logging

log = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "guardrail", "description": "Dual-gate interception of generative requests."},
    {"name": "admin-thresholds", "description": "Violation thresholds (hot-swappable)."},
    {"name": "admin-styles", "description": "Protected style registry."},
    {"name": "admin-audit", "description": "Audit trail lookup and buffer state."},
    {"name": "ops", "description": "Liveness and readiness."},
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime: Runtime = app.state.runtime
    await runtime.start()
    log.info(
        "guardrail started",
        extra={
            "store_backend": runtime.settings.STORE_BACKEND,
            "registry_styles": len(runtime.registry.active_styles()),
        },
    )
    try:
        yield
    finally:
        await runtime.stop()
        log.info("guardrail stopped")


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[Runtime] = None,
) -> FastAPI:
    s = settings or (runtime.settings if runtime is not None else get_settings())
    configure_root_logging(s.LOG_LEVEL, json_lines=s.LOG_JSON)

    app = FastAPI(
        title=s.APP_NAME,
        description="Pre- and post-generation guardrail for generative AI backends.",
        version=s.VERSION,
        lifespan=lifespan,
        openapi_tags=OPENAPI_TAGS,
    )
    app.state.settings = s
    app.state.runtime = runtime or build_runtime(s)

    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)

    app.include_router(intercept.router)
    app.include_router(admin_thresholds.router)
    app.include_router(admin_styles.router)
    app.include_router(admin_audit.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()
