from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies.runtime import get_runtime
from app.runtime import Runtime
from app.services.stores.base import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, AuditQuery

router = APIRouter(prefix="/admin", tags=["admin-audit"])


@router.get("/audit")
async def query_audit(
    user_id: Optional[str] = None,
    category: Optional[str] = None,
    style_id: Optional[str] = Query(None, description="Matched protected style id"),
    start_ms: Optional[int] = Query(None, ge=0),
    end_ms: Optional[int] = Query(None, ge=0),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    cursor: Optional[str] = None,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    try:
        q = AuditQuery(
            user_id=user_id,
            category=category,
            matched_style_id=style_id,
            start_ms=start_ms,
            end_ms=end_ms,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    page = await runtime.audit_store.query(q)
    return {
        "items": [r.to_dict() for r in page.records],
        "next_cursor": page.next_cursor,
    }


@router.get("/audit/{intervention_id}")
async def get_audit_record(
    intervention_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    record = await runtime.audit_store.get(intervention_id)
    if record is None:
        raise HTTPException(status_code=404, detail="audit record not found")
    return record.to_dict()


@router.get("/audit-buffer")
def audit_buffer(runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    writer = runtime.audit
    return {
        "depth": writer.depth,
        "capacity": writer.capacity,
        "pending": [r.intervention_id for r in writer.pending()],
        "dead_letters": [
            {
                "intervention_id": dl.record.intervention_id,
                "reason": dl.reason,
                "attempts": dl.attempts,
                "last_error": dl.last_error,
            }
            for dl in writer.dead_letters()
        ],
    }


@router.post("/audit-buffer/requeue")
async def requeue_dead_letters(runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    moved = runtime.audit.requeue_dead_letters()
    return {"requeued": moved, "depth": runtime.audit.depth}
