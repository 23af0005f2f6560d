from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from app.config import Settings
from app.services.circuit_breaker import CircuitBreaker, CircuitOpen, breaker_from_settings
from app.services.errors import OracleFailure

log = logging.getLogger(__name__)

ORACLE_NAME = "vision"


@dataclass(frozen=True)
class LabelScore:
    label: str
    confidence: float  # 0..100


class VisionOracleClient(Protocol):
    async def classify(self, image: bytes, classifier_ref: str) -> List[LabelScore]: ...


class _Label(BaseModel):
    label: str
    confidence: float = Field(ge=0.0, le=100.0)


class _LabelList(BaseModel):
    labels: List[_Label]


def parse_labels(data: Any) -> List[LabelScore]:
    if isinstance(data, list):
        data = {"labels": data}
    try:
        parsed = _LabelList.model_validate(data)
    except ValidationError as exc:
        raise OracleFailure(ORACLE_NAME, "malformed response") from exc
    return [LabelScore(label=x.label, confidence=x.confidence) for x in parsed.labels]


class NullVisionOracle:
    """No classifier backend configured: every call returns no labels."""

    async def classify(self, image: bytes, classifier_ref: str) -> List[LabelScore]:
        return []


class HttpVisionOracleClient:
    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout_s: float = 5.0,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._breaker = breaker
        self._transport = transport

    async def _post(self, image: bytes, classifier_ref: str) -> List[LabelScore]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "classifier": classifier_ref,
            "image_b64": base64.b64encode(image).decode("ascii"),
        }
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            r = await client.post(self.url, headers=headers, json=body)
            r.raise_for_status()
            try:
                data = r.json()
            except ValueError as exc:
                raise OracleFailure(ORACLE_NAME, "malformed response") from exc
        return parse_labels(data)

    async def classify(self, image: bytes, classifier_ref: str) -> List[LabelScore]:
        try:
            if self._breaker is not None:
                return await self._breaker.call(lambda: self._post(image, classifier_ref))
            return await self._post(image, classifier_ref)
        except OracleFailure:
            raise
        except CircuitOpen as exc:
            raise OracleFailure(ORACLE_NAME, "circuit open") from exc
        except httpx.TimeoutException as exc:
            raise OracleFailure(ORACLE_NAME, "timeout") from exc
        except httpx.HTTPStatusError as exc:
            raise OracleFailure(ORACLE_NAME, f"http {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise OracleFailure(ORACLE_NAME, f"unavailable: {type(exc).__name__}") from exc


def build_vision_oracle(settings: Settings) -> VisionOracleClient:
    if not settings.VISION_ORACLE_URL:
        log.info("VISION_ORACLE_URL not set; classifier stage disabled")
        return NullVisionOracle()
    return HttpVisionOracleClient(
        settings.VISION_ORACLE_URL,
        api_key=settings.VISION_ORACLE_API_KEY,
        timeout_s=settings.GATE2_BUDGET_S,
        breaker=breaker_from_settings(settings),
    )
