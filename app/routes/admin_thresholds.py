from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.dependencies.runtime import get_runtime
from app.models.guardrail import ViolationCategory
from app.runtime import Runtime

router = APIRouter(prefix="/admin", tags=["admin-thresholds"])

# Only these categories have a threshold; service_unavailable is not scored.
_SCORED = {ViolationCategory.JAILBREAK.value, ViolationCategory.IP_MIMICRY.value}


class ThresholdsUpdate(BaseModel):
    defaults: Dict[str, float] = Field(
        default_factory=dict,
        description="Category default thresholds, e.g. {'jailbreak': 0.7}",
    )
    overrides: Dict[str, Dict[str, float]] = Field(
        default_factory=dict,
        description="Finer thresholds per content category, e.g. {'jailbreak': {'violence': 0.6}}",
    )
    remove_overrides: Dict[str, List[str]] = Field(default_factory=dict)


def _check_categories(*names: str) -> None:
    unknown = sorted({n for n in names if n not in _SCORED})
    if unknown:
        raise HTTPException(status_code=422, detail=f"unknown threshold category: {', '.join(unknown)}")


@router.get("/thresholds")
def get_thresholds(runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    return runtime.thresholds.snapshot().as_dict()


@router.put("/thresholds")
def put_thresholds(
    body: ThresholdsUpdate,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    _check_categories(*body.defaults, *body.overrides, *body.remove_overrides)
    removals = [(cat, sub) for cat, subs in body.remove_overrides.items() for sub in subs]
    try:
        config = runtime.thresholds.update(
            defaults=body.defaults,
            overrides=body.overrides,
            remove=removals,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return config.as_dict()
