from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class AuditRecord:
    """Append-only fact about one terminal decision.

    Content is referenced by SHA-256 digest only; raw prompts and generated
    content never enter the audit trail.
    """

    intervention_id: str
    ts_ms: int
    user_id: str
    request_id: str
    gate: int
    category: str
    action: str  # "blocked" | "allowed"
    score: float
    threshold: float
    prompt_sha256: str
    content_sha256: Optional[str]
    rationale: str
    matched_style_id: Optional[str]
    method: str
    retain_until_ms: int

    @property
    def timestamp(self) -> str:
        dt = datetime.fromtimestamp(self.ts_ms / 1000.0, tz=timezone.utc)
        return dt.isoformat().replace("+00:00", "Z")

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["timestamp"] = self.timestamp
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditRecord":
        return cls(
            intervention_id=str(data["intervention_id"]),
            ts_ms=int(data["ts_ms"]),
            user_id=str(data.get("user_id") or ""),
            request_id=str(data.get("request_id") or ""),
            gate=int(data.get("gate") or 0),
            category=str(data.get("category") or "none"),
            action=str(data.get("action") or ""),
            score=float(data.get("score") or 0.0),
            threshold=float(data.get("threshold") or 0.0),
            prompt_sha256=str(data.get("prompt_sha256") or ""),
            content_sha256=data.get("content_sha256"),
            rationale=str(data.get("rationale") or ""),
            matched_style_id=data.get("matched_style_id"),
            method=str(data.get("method") or "none"),
            retain_until_ms=int(data.get("retain_until_ms") or 0),
        )
