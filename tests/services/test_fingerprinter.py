from __future__ import annotations

from typing import List

import pytest

from app.models.guardrail import MatchStage, ViolationCategory
from app.models.style import ProtectedStyle, StyleStatus
from app.services import imaging
from app.services.errors import FingerprintError, OracleFailure
from app.services.fingerprinter import (
    NEAR_DUPLICATE_BOUND,
    Fingerprinter,
    embedding_stage,
    hash_stage,
)
from app.services.oracles.vision import LabelScore, NullVisionOracle
from app.services.thresholds import ThresholdStore


def _flip(h: str, bits: int) -> str:
    """Hash at exactly ``bits`` Hamming distance from ``h``."""
    return f"{int(h, 16) ^ ((1 << bits) - 1):016x}"


def _style(style_id: str, **kw) -> ProtectedStyle:
    return ProtectedStyle(
        style_id=style_id,
        rights_holder_contact=f"{style_id}@rights.example",
        registered_at=0.0,
        **kw,
    )


def _thresholds() -> ThresholdStore:
    return ThresholdStore({ViolationCategory.JAILBREAK: 0.75, ViolationCategory.IP_MIMICRY: 0.80})


class ScriptedVision:
    def __init__(self, labels: List[LabelScore] | None = None, error: Exception | None = None):
        self.labels = labels or []
        self.error = error
        self.calls: List[str] = []

    async def classify(self, image: bytes, classifier_ref: str) -> List[LabelScore]:
        self.calls.append(classifier_ref)
        if self.error is not None:
            raise self.error
        return self.labels


def test_hash_stage_near_duplicate_bound() -> None:
    base = "a5a5a5a5a5a5a5a5"
    near = _style("near", perceptual_hashes=frozenset({_flip(base, NEAR_DUPLICATE_BOUND - 1)}))
    far = _style("far", perceptual_hashes=frozenset({_flip(base, NEAR_DUPLICATE_BOUND)}))

    hit = hash_stage(base, [far, near])
    assert hit is not None
    assert hit.style_id == "near"
    assert hit.stage is MatchStage.HASH
    assert hit.similarity == pytest.approx(1 - (NEAR_DUPLICATE_BOUND - 1) / 64)

    assert hash_stage(base, [far]) is None


def test_hash_stage_skips_malformed_hashes() -> None:
    style = _style("s", perceptual_hashes=frozenset({"zz-not-hex", "a5a5a5a5a5a5a5a5"}))
    hit = hash_stage("a5a5a5a5a5a5a5a5", [style])
    assert hit is not None and hit.similarity == 1.0


def test_embedding_stage_uses_bound_and_skips_other_dimensions() -> None:
    vec = (0.6, 0.8)
    style = _style("emb", embeddings=((0.6, 0.8), (1.0, 0.0, 0.0)))
    hit = embedding_stage(vec, [style], bound=0.8)
    assert hit.stage is MatchStage.EMBEDDING
    assert hit.style_id == "emb"
    assert hit.similarity == pytest.approx(1.0)

    miss = embedding_stage(vec, [_style("o", embeddings=((0.8, -0.6),))], bound=0.8)
    assert miss.stage is MatchStage.NONE
    assert miss.style_id is None


async def test_identical_image_matches_on_hash(artwork, png) -> None:
    data = png(artwork(4))
    style = _style("protected", perceptual_hashes=frozenset({imaging.perceptual_hash_bytes(data)}))
    vision = ScriptedVision()
    fp = await Fingerprinter(vision, _thresholds()).match(data, [style])
    assert fp.stage is MatchStage.HASH
    assert fp.style_id == "protected"
    assert fp.similarity == 1.0
    # Hash hit ends the pass before any classifier call.
    assert vision.calls == []


async def test_classifier_stage_requires_high_confidence_and_named_style(artwork, png) -> None:
    data = png(artwork(5))
    far_hash = _flip(imaging.perceptual_hash_bytes(data), 32)
    style = _style("style-x", perceptual_hashes=frozenset({far_hash}), classifier_ref="clf-x")

    weak = ScriptedVision([LabelScore("clf-x", 90.0)])
    fp = await Fingerprinter(weak, _thresholds()).match(data, [style])
    assert fp.stage is not MatchStage.CLASSIFIER

    other = ScriptedVision([LabelScore("someone-else", 99.0)])
    fp = await Fingerprinter(other, _thresholds()).match(data, [style])
    assert fp.stage is not MatchStage.CLASSIFIER

    strong = ScriptedVision([LabelScore("clf-x", 96.0)])
    fp = await Fingerprinter(strong, _thresholds()).match(data, [style])
    assert fp.stage is MatchStage.CLASSIFIER
    assert fp.style_id == "style-x"
    assert fp.similarity == pytest.approx(0.96)
    assert strong.calls == ["clf-x"]


async def test_classifier_failure_propagates(artwork, png) -> None:
    data = png(artwork(6))
    style = _style("style-y", classifier_ref="clf-y")
    vision = ScriptedVision(error=OracleFailure("vision", "timeout"))
    with pytest.raises(OracleFailure):
        await Fingerprinter(vision, _thresholds()).match(data, [style])


async def test_embedding_match_when_hash_and_classifier_miss(artwork, png) -> None:
    img = artwork(7)
    data = png(img)
    style = _style("emb-style", embeddings=(imaging.embed(img),))
    fp = await Fingerprinter(NullVisionOracle(), _thresholds()).match(data, [style])
    assert fp.stage is MatchStage.EMBEDDING
    assert fp.style_id == "emb-style"
    assert fp.similarity > 0.8


async def test_suspended_styles_are_ignored(artwork, png) -> None:
    data = png(artwork(8))
    style = _style(
        "retired",
        perceptual_hashes=frozenset({imaging.perceptual_hash_bytes(data)}),
        status=StyleStatus.SUSPENDED,
    )
    fp = await Fingerprinter(NullVisionOracle(), _thresholds()).match(data, [style])
    assert fp.stage is MatchStage.NONE


async def test_undecodable_image_raises() -> None:
    with pytest.raises(FingerprintError):
        await Fingerprinter(NullVisionOracle(), _thresholds()).match(b"garbage", [_style("s")])
