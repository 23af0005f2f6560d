from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from pydantic import BaseModel, Field, ValidationError

from app.config import Settings
from app.services.circuit_breaker import CircuitBreaker, CircuitOpen, breaker_from_settings
from app.services.errors import OracleFailure

log = logging.getLogger(__name__)

ORACLE_NAME = "semantic"


@dataclass(frozen=True)
class SemanticAssessment:
    violation_detected: bool
    confidence: float
    category: str
    reasoning_steps: Tuple[str, ...] = ()

    @property
    def rationale(self) -> str:
        return " -> ".join(s for s in self.reasoning_steps if s) or "no reasoning provided"


class ScoreOracleClient(Protocol):
    """Capability contract: reason over a prompt, return a score + rationale."""

    async def analyze(self, prompt: str) -> SemanticAssessment: ...


class _OracleResponse(BaseModel):
    violationDetected: bool
    confidence: float = Field(ge=0.0, le=1.0)
    category: str = "none"
    reasoningSteps: List[str] = Field(default_factory=list)


def parse_assessment(data: Any) -> SemanticAssessment:
    try:
        parsed = _OracleResponse.model_validate(data)
    except ValidationError as exc:
        raise OracleFailure(ORACLE_NAME, "malformed response") from exc
    return SemanticAssessment(
        violation_detected=parsed.violationDetected,
        confidence=parsed.confidence,
        category=parsed.category.strip().lower() or "none",
        reasoning_steps=tuple(parsed.reasoningSteps),
    )


class LocalRulesScoreOracle:
    """
    Deterministic stand-in used in dev/CI when no oracle URL is configured.
    Flags well-known instruction-override phrasing; everything else scores low.
    """

    _RE_JAILBREAK = re.compile(
        r"(?is)"
        r"\bignore\s+(?:all\s+)?(?:prior|previous|above)\s+instructions\b"
        r"|\b(?:act|pretend)\s+(?:as|to\s+be)\s+an?\s+(?:unrestricted|unfiltered|jailbroken)\b"
        r"|\bdeveloper\s+mode\b"
        r"|(?-i:\bDAN\b)"
    )

    async def analyze(self, prompt: str) -> SemanticAssessment:
        hits = [m.group(0) for m in self._RE_JAILBREAK.finditer(prompt or "")]
        if hits:
            steps = tuple(f"matched instruction-override pattern: {h!r}" for h in hits[:3])
            confidence = min(1.0, 0.85 + 0.05 * (len(hits) - 1))
            return SemanticAssessment(True, confidence, "jailbreak", steps)
        return SemanticAssessment(False, 0.05, "none", ("no override patterns found",))


class HttpScoreOracleClient:
    """
    JSON-over-HTTP adapter. Never logs prompt bodies or API keys.
    Timeout, transport errors, non-2xx and unparseable replies all surface as
    OracleFailure.
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout_s: float = 2.0,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._breaker = breaker
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    async def _post(self, prompt: str) -> SemanticAssessment:
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            r = await client.post(self.url, headers=self._headers(), json={"prompt": prompt})
            r.raise_for_status()
            try:
                data = r.json()
            except ValueError as exc:
                raise OracleFailure(ORACLE_NAME, "malformed response") from exc
        return parse_assessment(data)

    async def analyze(self, prompt: str) -> SemanticAssessment:
        try:
            if self._breaker is not None:
                return await self._breaker.call(lambda: self._post(prompt))
            return await self._post(prompt)
        except OracleFailure:
            raise
        except CircuitOpen as exc:
            raise OracleFailure(ORACLE_NAME, "circuit open") from exc
        except httpx.TimeoutException as exc:
            raise OracleFailure(ORACLE_NAME, "timeout") from exc
        except httpx.HTTPStatusError as exc:
            raise OracleFailure(
                ORACLE_NAME, f"http {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise OracleFailure(ORACLE_NAME, f"unavailable: {type(exc).__name__}") from exc


def build_score_oracle(settings: Settings) -> ScoreOracleClient:
    if not settings.SCORE_ORACLE_URL:
        log.info("SCORE_ORACLE_URL not set; using local rules oracle")
        return LocalRulesScoreOracle()
    return HttpScoreOracleClient(
        settings.SCORE_ORACLE_URL,
        api_key=settings.SCORE_ORACLE_API_KEY,
        timeout_s=settings.GATE1_TIMEOUT_S,
        breaker=breaker_from_settings(settings),
    )
