from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from app.dependencies.runtime import get_runtime
from app.middleware.request_id import get_request_id, resolve_request_id
from app.models.guardrail import Blocked, Delivered, Transaction, ViolationCategory
from app.runtime import Runtime

router = APIRouter(prefix="/v1", tags=["guardrail"])

DECISION_HEADER = "X-Guardrail-Decision"
INTERVENTION_HEADER = "X-Intervention-ID"


class InterceptIn(BaseModel):
    prompt: str
    user_id: str
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Extra fields forwarded to the generative backend with the prompt",
    )


class BlockOut(BaseModel):
    status: str = "blocked"
    category: str
    message: str
    intervention_id: str
    score: float
    threshold: float


def _auth_context(request: Request, api_key_header: str) -> Dict[str, str]:
    ctx: Dict[str, str] = {}
    auth = request.headers.get("authorization")
    if auth:
        ctx["authorization"] = auth
    key = request.headers.get(api_key_header)
    if key:
        ctx["x-api-key"] = key
    return ctx


def _blocked_response(outcome: Blocked) -> JSONResponse:
    status = 503 if outcome.category is ViolationCategory.SERVICE_UNAVAILABLE else 200
    return JSONResponse(
        status_code=status,
        content=BlockOut(**outcome.to_dict()).model_dump(),
        headers={
            DECISION_HEADER: "block",
            INTERVENTION_HEADER: outcome.intervention_id,
        },
    )


@router.post(
    "/intercept",
    responses={200: {"description": "Generated content, or a policy block body"}},
)
async def intercept(
    body: InterceptIn,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> Response:
    header = runtime.settings.API_KEY_HEADER
    rid: Optional[str] = get_request_id()
    txn = Transaction(
        request_id=rid or resolve_request_id(None),
        user_id=body.user_id,
        api_key=request.headers.get(header, ""),
        prompt=body.prompt,
        payload=dict(body.payload),
        auth_context=_auth_context(request, header),
    )
    outcome = await runtime.orchestrator.process(txn)
    if isinstance(outcome, Delivered):
        # Bytes go back exactly as the backend produced them.
        return Response(
            content=outcome.content.body,
            media_type=outcome.content.content_type,
            headers={
                DECISION_HEADER: "allow",
                INTERVENTION_HEADER: outcome.intervention_id,
            },
        )
    return _blocked_response(outcome)
