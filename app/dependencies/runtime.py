from __future__ import annotations

from fastapi import HTTPException, Request

from app.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Shared dependency returning the components built at app startup."""

    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="guardrail runtime not initialised")
    return runtime


__all__ = ["get_runtime"]
