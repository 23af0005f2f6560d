from __future__ import annotations

from .audit import AuditRecord
from .guardrail import (
    BLOCK_MESSAGES,
    Blocked,
    Delivered,
    DetectionMethod,
    FingerprintResult,
    GeneratedContent,
    MatchStage,
    Outcome,
    Transaction,
    TransactionState,
    ValidationResult,
    ViolationCategory,
)
from .style import ProtectedStyle, StyleStatus

__all__ = [
    "AuditRecord",
    "BLOCK_MESSAGES",
    "Blocked",
    "Delivered",
    "DetectionMethod",
    "FingerprintResult",
    "GeneratedContent",
    "MatchStage",
    "Outcome",
    "ProtectedStyle",
    "StyleStatus",
    "Transaction",
    "TransactionState",
    "ValidationResult",
    "ViolationCategory",
]
