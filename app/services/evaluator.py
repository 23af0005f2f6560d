"""Score-to-decision logic for both gates.

The evaluator is pure: it reads one threshold snapshot per call and never
touches the network or a store, so every decision is reproducible from its
inputs.
"""

from __future__ import annotations

import math
from typing import Optional

from app.models.guardrail import (
    DetectionMethod,
    FingerprintResult,
    MatchStage,
    ValidationResult,
    ViolationCategory,
)
from app.services.thresholds import ThresholdStore

_STAGE_TO_METHOD = {
    MatchStage.HASH: DetectionMethod.HASH,
    MatchStage.CLASSIFIER: DetectionMethod.CLASSIFIER,
    MatchStage.EMBEDDING: DetectionMethod.EMBEDDING,
    MatchStage.NONE: DetectionMethod.NONE,
}

# Stages whose match bound is fixed rather than read from the thresholds.
_FIXED_BOUND_STAGES = frozenset({MatchStage.HASH, MatchStage.CLASSIFIER})


def _clamp01(x: float) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v):
        return 0.0
    return min(1.0, max(0.0, v))


class ViolationEvaluator:
    def __init__(self, thresholds: ThresholdStore) -> None:
        self._thresholds = thresholds

    @property
    def thresholds(self) -> ThresholdStore:
        return self._thresholds

    def threshold_for(
        self, category: ViolationCategory, content_category: Optional[str] = None
    ) -> float:
        return self._thresholds.snapshot().resolve(category, content_category)

    def evaluate(
        self,
        raw_score: float,
        category: ViolationCategory,
        threshold: Optional[float] = None,
        *,
        content_category: Optional[str] = None,
        rationale: str = "",
        method: DetectionMethod = DetectionMethod.SEMANTIC,
        matched_style_id: Optional[str] = None,
    ) -> ValidationResult:
        """Compare ``raw_score`` to the threshold for ``category``.

        A score equal to the threshold is not a violation.
        """
        score = _clamp01(raw_score)
        t = (
            float(threshold)
            if threshold is not None
            else self.threshold_for(category, content_category)
        )
        violation = score > t
        if not rationale:
            verb = "exceeds" if violation else "within"
            rationale = f"{category.value} score {score:.3f} {verb} threshold {t:.3f}"
        return ValidationResult(
            violation=violation,
            score=score,
            category=category if violation else ViolationCategory.NONE,
            rationale=rationale,
            method=method,
            threshold=t,
            matched_style_id=matched_style_id if violation else None,
        )

    def evaluate_fingerprint(self, result: FingerprintResult) -> ValidationResult:
        """Map a fingerprint match to a gate-2 decision.

        Hash and classifier matches were already decided against their own
        fixed bounds, so they block whatever the ip_mimicry threshold is; the
        configured threshold is still recorded. Embedding matches (and no
        match) are scored against that threshold.
        """
        method = _STAGE_TO_METHOD[result.stage]
        if result.stage is MatchStage.NONE:
            rationale = "no protected style matched"
        else:
            rationale = (
                f"{result.stage.value} stage matched style {result.style_id} "
                f"with similarity {result.similarity:.3f}"
            )
        if result.stage in _FIXED_BOUND_STAGES and result.style_id:
            return ValidationResult(
                violation=True,
                score=_clamp01(result.similarity),
                category=ViolationCategory.IP_MIMICRY,
                rationale=rationale,
                method=method,
                threshold=self.threshold_for(ViolationCategory.IP_MIMICRY),
                matched_style_id=result.style_id,
            )
        return self.evaluate(
            result.similarity,
            ViolationCategory.IP_MIMICRY,
            rationale=rationale,
            method=method,
            matched_style_id=result.style_id,
        )

    def no_visual_content(self) -> ValidationResult:
        return ValidationResult(
            violation=False,
            score=0.0,
            category=ViolationCategory.NONE,
            rationale="no visual content to fingerprint",
            method=DetectionMethod.NONE,
            threshold=self.threshold_for(ViolationCategory.IP_MIMICRY),
        )

    @staticmethod
    def fail_closed(method: DetectionMethod, reason: str) -> ValidationResult:
        """Block decision for a failed or timed-out dependency."""
        return ValidationResult(
            violation=True,
            score=1.0,
            category=ViolationCategory.SERVICE_UNAVAILABLE,
            rationale=reason,
            method=method,
            threshold=0.0,
        )
