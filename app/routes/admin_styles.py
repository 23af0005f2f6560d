from __future__ import annotations

import base64
import binascii
import re
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, field_validator

from app.dependencies.runtime import get_runtime
from app.models.style import ProtectedStyle, StyleStatus
from app.runtime import Runtime
from app.services import imaging
from app.services.errors import FingerprintError, StyleNotFound

router = APIRouter(prefix="/admin", tags=["admin-styles"])

_HASH_RE = re.compile(r"^[0-9a-f]{16}$")


def _normalise_hashes(values: List[str]) -> List[str]:
    out = []
    for raw in values:
        h = raw.strip().lower()
        if not _HASH_RE.match(h):
            raise ValueError(f"perceptual hash must be 16 hex characters, got {raw!r}")
        out.append(h)
    return out


def _check_embeddings(values: List[List[float]]) -> List[List[float]]:
    for vec in values:
        if len(vec) != imaging.EMBEDDING_DIM:
            raise ValueError(f"embedding must have {imaging.EMBEDDING_DIM} components")
    return values


class SamplesIn(BaseModel):
    perceptual_hashes: List[str] = Field(default_factory=list)
    embeddings: List[List[float]] = Field(default_factory=list)
    image_b64: Optional[str] = Field(
        default=None,
        description="Reference artwork; its hash and embedding are added as samples",
    )

    @field_validator("perceptual_hashes")
    @classmethod
    def _hashes(cls, v: List[str]) -> List[str]:
        return _normalise_hashes(v)

    @field_validator("embeddings")
    @classmethod
    def _embeddings(cls, v: List[List[float]]) -> List[List[float]]:
        return _check_embeddings(v)


class StyleIn(SamplesIn):
    style_id: str = Field(min_length=1, max_length=128)
    rights_holder_contact: str = Field(min_length=1)
    classifier_ref: Optional[str] = None
    status: StyleStatus = StyleStatus.ACTIVE


class StatusIn(BaseModel):
    status: StyleStatus


def _samples_from(body: SamplesIn, max_pixels: int) -> tuple[List[str], List[List[float]]]:
    """Runs in the threadpool: decoding a reference image is CPU-bound."""
    hashes = list(body.perceptual_hashes)
    embeddings = list(body.embeddings)
    if body.image_b64:
        try:
            raw = base64.b64decode(body.image_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=422, detail="image_b64 is not valid base64") from exc
        try:
            img = imaging.load_image(raw, max_pixels)
        except FingerprintError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        hashes.append(imaging.perceptual_hash(img))
        embeddings.append(list(imaging.embed(img)))
    return hashes, embeddings


async def _require(runtime: Runtime, style_id: str) -> ProtectedStyle:
    style = await runtime.style_store.get(style_id)
    if style is None:
        raise StyleNotFound(style_id)
    return style


@router.post("/styles", status_code=201)
async def register_style(
    body: StyleIn,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    hashes, embeddings = await run_in_threadpool(
        _samples_from, body, runtime.fingerprinter.max_image_pixels
    )
    style = ProtectedStyle(
        style_id=body.style_id,
        rights_holder_contact=body.rights_holder_contact,
        registered_at=time.time(),
        classifier_ref=body.classifier_ref,
        status=body.status,
    ).with_samples(hashes, embeddings)
    if not await runtime.style_store.create(style):
        raise HTTPException(status_code=409, detail=f"style {body.style_id!r} already registered")
    await runtime.registry.refresh()
    return style.to_dict()


@router.get("/styles/{style_id}")
async def get_style(style_id: str, runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    return (await _require(runtime, style_id)).to_dict()


@router.post("/styles/{style_id}/samples")
async def add_samples(
    style_id: str,
    body: SamplesIn,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    await _require(runtime, style_id)
    hashes, embeddings = await run_in_threadpool(
        _samples_from, body, runtime.fingerprinter.max_image_pixels
    )
    if not hashes and not embeddings:
        raise HTTPException(status_code=422, detail="no samples supplied")
    style = await runtime.style_store.add_samples(style_id, hashes, embeddings)
    await runtime.registry.refresh()
    return style.to_dict()


@router.post("/styles/{style_id}/status")
async def set_status(
    style_id: str,
    body: StatusIn,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    style = await runtime.style_store.set_status(style_id, body.status)
    await runtime.registry.refresh()
    return style.to_dict()


@router.post("/registry/refresh")
async def refresh_registry(runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    ok = await runtime.registry.refresh()
    age = runtime.registry.age_s()
    return {
        "refreshed": ok,
        "styles": len(runtime.registry.active_styles()),
        "snapshot_age_s": None if age is None else round(age, 3),
        "stale": runtime.registry.stale,
    }
