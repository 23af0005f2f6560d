from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.runtime import Runtime

router = APIRouter(tags=["ops"])


def _ok(name: str, detail: Any | None = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"status": "ok"}
    if detail is not None:
        payload["detail"] = detail
    return {name: payload}


def _fail(name: str, detail: Any | None = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"status": "fail"}
    if detail is not None:
        payload["detail"] = detail
    return {name: payload}


def _has_metrics(app: Any) -> bool:
    for route in getattr(app.router, "routes", []):
        if getattr(route, "path", None) == "/metrics":
            return True
    return False


def _check_registry(runtime: Runtime) -> Dict[str, Any]:
    registry = runtime.registry
    age = registry.age_s()
    detail = {
        "styles": len(registry.active_styles()),
        "snapshot_age_s": None if age is None else round(age, 1),
        "stale": registry.stale,
        "consecutive_failures": registry.consecutive_failures,
    }
    # A stale snapshot still serves fingerprinting; only a never-loaded one fails.
    if age is None:
        return _fail("registry", detail)
    return _ok("registry", detail)


def _check_audit(runtime: Runtime) -> Dict[str, Any]:
    writer = runtime.audit
    detail = {
        "buffer_depth": writer.depth,
        "capacity": writer.capacity,
        "dead_letters": len(writer.dead_letters()),
    }
    if writer.depth >= writer.capacity:
        return _fail("audit", detail)
    return _ok("audit", detail)


def _check_thresholds(runtime: Runtime) -> Dict[str, Any]:
    snap = runtime.thresholds.snapshot()
    return _ok("thresholds", {"version": snap.version})


@router.get("/livez")
async def livez() -> JSONResponse:
    payload = {"status": "ok", "ok": True, "time": time.time()}
    return JSONResponse(payload)


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    app = request.app
    runtime = getattr(app.state, "runtime", None)
    checks: Dict[str, Any] = {}
    if runtime is None:
        checks.update(_fail("runtime", "not initialised"))
    else:
        checks.update(_check_registry(runtime))
        checks.update(_check_audit(runtime))
        checks.update(_check_thresholds(runtime))
    checks.update(_ok("metrics", {"route": _has_metrics(app)}))

    overall = "ok"
    for value in checks.values():
        if isinstance(value, dict) and value.get("status") == "fail":
            overall = "fail"
            break

    status_code = 200 if overall == "ok" else 503
    payload = {"status": overall, "ok": overall == "ok", "checks": checks}
    return JSONResponse(payload, status_code=status_code)


@router.get("/health")
async def health_alias(request: Request) -> JSONResponse:
    return await readyz(request)
