from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class ViolationCategory(str, Enum):
    NONE = "none"
    JAILBREAK = "jailbreak"
    IP_MIMICRY = "ip_mimicry"
    SERVICE_UNAVAILABLE = "service_unavailable"


class DetectionMethod(str, Enum):
    """Tag describing which check produced a gate result."""

    SEMANTIC = "semantic"
    HASH = "hash"
    CLASSIFIER = "classifier"
    EMBEDDING = "embedding"
    NONE = "none"
    ORACLE_FAILURE = "oracle_failure"
    DOWNSTREAM_FAILURE = "downstream_failure"


class MatchStage(str, Enum):
    HASH = "hash"
    CLASSIFIER = "classifier"
    EMBEDDING = "embedding"
    NONE = "none"


class TransactionState(str, Enum):
    RECEIVED = "received"
    GATE1_EVAL = "gate1"
    FORWARDING = "forwarded"
    GATE2_EVAL = "gate2"
    DELIVERED = "delivered"
    BLOCKED = "blocked"

    @property
    def terminal(self) -> bool:
        return self in (TransactionState.DELIVERED, TransactionState.BLOCKED)


# Fixed user-facing messages, one per block category.
BLOCK_MESSAGES: Dict[ViolationCategory, str] = {
    ViolationCategory.JAILBREAK: (
        "Your request was blocked because it violates the usage policy."
    ),
    ViolationCategory.IP_MIMICRY: (
        "The generated content was withheld because it closely matches a "
        "protected artistic style registered by its rights holder."
    ),
    ViolationCategory.SERVICE_UNAVAILABLE: (
        "The service is temporarily unavailable. Please try again later."
    ),
}


@dataclass(frozen=True)
class ValidationResult:
    violation: bool
    score: float
    category: ViolationCategory
    rationale: str
    method: DetectionMethod
    threshold: float
    matched_style_id: Optional[str] = None


@dataclass(frozen=True)
class FingerprintResult:
    style_id: Optional[str]
    similarity: float
    stage: MatchStage

    @classmethod
    def no_match(cls) -> "FingerprintResult":
        return cls(style_id=None, similarity=0.0, stage=MatchStage.NONE)


@dataclass(frozen=True)
class GeneratedContent:
    body: bytes
    content_type: str = "text/plain; charset=utf-8"

    @property
    def is_visual(self) -> bool:
        return self.content_type.split(";", 1)[0].strip().lower().startswith("image/")


@dataclass
class Transaction:
    """One user interaction; lives only as long as its orchestrator call."""

    request_id: str
    user_id: str
    api_key: str
    prompt: str
    payload: Dict[str, Any] = field(default_factory=dict)
    auth_context: Dict[str, str] = field(default_factory=dict)
    content: Optional[GeneratedContent] = None
    state: TransactionState = TransactionState.RECEIVED
    history: List[TransactionState] = field(
        default_factory=lambda: [TransactionState.RECEIVED]
    )

    def advance(self, state: TransactionState) -> None:
        if self.state.terminal:
            raise RuntimeError(f"transaction {self.request_id} already {self.state.value}")
        self.state = state
        self.history.append(state)


@dataclass(frozen=True)
class Delivered:
    content: GeneratedContent
    intervention_id: str


@dataclass(frozen=True)
class Blocked:
    category: ViolationCategory
    message: str
    intervention_id: str
    score: float
    threshold: float
    # "policy", "oracle" or "downstream"
    source: str = "policy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "blocked",
            "category": self.category.value,
            "message": self.message,
            "intervention_id": self.intervention_id,
            "score": self.score,
            "threshold": self.threshold,
        }


Outcome = Union[Delivered, Blocked]
