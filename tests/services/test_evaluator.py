from __future__ import annotations

import math

import pytest

from app.models.guardrail import DetectionMethod, FingerprintResult, MatchStage, ViolationCategory
from app.services.evaluator import ViolationEvaluator
from app.services.thresholds import ThresholdStore


@pytest.fixture()
def evaluator() -> ViolationEvaluator:
    return ViolationEvaluator(
        ThresholdStore({ViolationCategory.JAILBREAK: 0.75, ViolationCategory.IP_MIMICRY: 0.80})
    )


def test_score_above_threshold_is_violation(evaluator: ViolationEvaluator) -> None:
    r = evaluator.evaluate(0.9, ViolationCategory.JAILBREAK)
    assert r.violation is True
    assert r.category is ViolationCategory.JAILBREAK
    assert r.score == pytest.approx(0.9)
    assert r.threshold == pytest.approx(0.75)
    assert r.method is DetectionMethod.SEMANTIC


def test_score_equal_to_threshold_is_not_violation(evaluator: ViolationEvaluator) -> None:
    r = evaluator.evaluate(0.75, ViolationCategory.JAILBREAK)
    assert r.violation is False
    assert r.category is ViolationCategory.NONE
    assert r.threshold == pytest.approx(0.75)


def test_explicit_threshold_overrides_snapshot(evaluator: ViolationEvaluator) -> None:
    assert evaluator.evaluate(0.5, ViolationCategory.JAILBREAK, 0.4).violation is True
    assert evaluator.evaluate(0.5, ViolationCategory.JAILBREAK, 0.5).violation is False


@pytest.mark.parametrize(
    "raw, expected",
    [(-0.3, 0.0), (1.7, 1.0), (math.nan, 0.0), (math.inf, 1.0)],
)
def test_scores_are_clamped(evaluator: ViolationEvaluator, raw: float, expected: float) -> None:
    assert evaluator.evaluate(raw, ViolationCategory.JAILBREAK).score == expected


def test_finer_content_category_threshold_wins(evaluator: ViolationEvaluator) -> None:
    evaluator.thresholds.update(overrides={"jailbreak": {"violence": 0.5}})
    r = evaluator.evaluate(0.6, ViolationCategory.JAILBREAK, content_category="violence")
    assert r.violation is True
    assert r.threshold == pytest.approx(0.5)
    # Unknown content category falls back to the category default.
    r = evaluator.evaluate(0.6, ViolationCategory.JAILBREAK, content_category="weapons")
    assert r.violation is False
    assert r.threshold == pytest.approx(0.75)


def test_threshold_update_applies_to_next_evaluation(evaluator: ViolationEvaluator) -> None:
    assert evaluator.evaluate(0.7, ViolationCategory.JAILBREAK).violation is False
    evaluator.thresholds.update(defaults={"jailbreak": 0.6})
    assert evaluator.evaluate(0.7, ViolationCategory.JAILBREAK).violation is True


def test_fingerprint_match_maps_stage_to_method(evaluator: ViolationEvaluator) -> None:
    r = evaluator.evaluate_fingerprint(
        FingerprintResult(style_id="style-a", similarity=62 / 64, stage=MatchStage.HASH)
    )
    assert r.violation is True
    assert r.category is ViolationCategory.IP_MIMICRY
    assert r.method is DetectionMethod.HASH
    assert r.matched_style_id == "style-a"
    assert r.threshold == pytest.approx(0.80)


def test_fingerprint_below_threshold_drops_style(evaluator: ViolationEvaluator) -> None:
    r = evaluator.evaluate_fingerprint(
        FingerprintResult(style_id="style-a", similarity=0.5, stage=MatchStage.EMBEDDING)
    )
    assert r.violation is False
    assert r.matched_style_id is None


def test_no_match_is_clean(evaluator: ViolationEvaluator) -> None:
    r = evaluator.evaluate_fingerprint(FingerprintResult.no_match())
    assert r.violation is False
    assert r.method is DetectionMethod.NONE


def test_fail_closed_result() -> None:
    r = ViolationEvaluator.fail_closed(DetectionMethod.ORACLE_FAILURE, "semantic oracle failure: timeout")
    assert r.violation is True
    assert r.category is ViolationCategory.SERVICE_UNAVAILABLE
    assert r.method is DetectionMethod.ORACLE_FAILURE


@pytest.mark.parametrize(
    "stage, similarity",
    [(MatchStage.HASH, 1 - 4 / 64), (MatchStage.CLASSIFIER, 0.91)],
    ids=["hash", "classifier"],
)
def test_fixed_bound_matches_block_above_raised_threshold(
    evaluator: ViolationEvaluator, stage: MatchStage, similarity: float
) -> None:
    evaluator.thresholds.update(defaults={"ip_mimicry": 0.95})
    r = evaluator.evaluate_fingerprint(
        FingerprintResult(style_id="style-a", similarity=similarity, stage=stage)
    )
    assert r.violation is True
    assert r.category is ViolationCategory.IP_MIMICRY
    assert r.matched_style_id == "style-a"
    assert r.score == pytest.approx(similarity)
    assert r.threshold == pytest.approx(0.95)


def test_embedding_match_still_follows_the_threshold(evaluator: ViolationEvaluator) -> None:
    evaluator.thresholds.update(defaults={"ip_mimicry": 0.95})
    r = evaluator.evaluate_fingerprint(
        FingerprintResult(style_id="style-a", similarity=0.93, stage=MatchStage.EMBEDDING)
    )
    assert r.violation is False
