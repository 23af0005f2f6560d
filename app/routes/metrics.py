# app/routes/metrics.py
# Summary: Prometheus /metrics exposition of the guardrail_* counters and gauges.
# - Forces Prometheus text exposition v0.0.4 content type regardless of library defaults.

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import REGISTRY, generate_latest

router = APIRouter()

TEXT_EXPO_V004 = "text/plain; version=0.0.4; charset=utf-8"


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    resp = Response(content=generate_latest(REGISTRY))
    resp.headers["Content-Type"] = TEXT_EXPO_V004
    return resp
