"""
Multi-stage visual-similarity matching against protected styles.

Stages run cheapest/most exact first and each may end the pass early:

1. hash        - perceptual-hash Hamming distance under a fixed near-duplicate bound
2. classifier  - external per-style classifier, fixed high-confidence bound
3. embedding   - cosine similarity of feature vectors vs the ip_mimicry threshold

Every stage reads only the snapshot it is handed; nothing here talks to the
style store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional, Sequence, Tuple

from PIL import Image

from app.models.guardrail import FingerprintResult, MatchStage, ViolationCategory
from app.models.style import ProtectedStyle
from app.services import imaging
from app.services.oracles.vision import VisionOracleClient
from app.services.thresholds import ThresholdStore

log = logging.getLogger(__name__)

# Hamming distance (bits) strictly below which two hashes are near-duplicates.
NEAR_DUPLICATE_BOUND = 6
# Classifier confidence (0..100) that must be exceeded to match.
CLASSIFIER_CONFIDENCE_BOUND = 90.0


def hash_stage(image_hash: str, styles: Iterable[ProtectedStyle]) -> Optional[FingerprintResult]:
    best: Optional[Tuple[int, str]] = None
    for style in styles:
        for stored in style.perceptual_hashes:
            try:
                d = imaging.hamming(image_hash, stored)
            except ValueError:
                log.debug("skipping malformed hash on style %s", style.style_id)
                continue
            if best is None or d < best[0]:
                best = (d, style.style_id)
    if best is None or best[0] >= NEAR_DUPLICATE_BOUND:
        return None
    distance, style_id = best
    return FingerprintResult(
        style_id=style_id,
        similarity=1.0 - distance / float(imaging.HASH_BITS),
        stage=MatchStage.HASH,
    )


def _names_style(label: str, style: ProtectedStyle) -> bool:
    key = label.strip().lower()
    return key == style.style_id.lower() or (
        style.classifier_ref is not None and key == style.classifier_ref.lower()
    )


async def classifier_stage(
    image: bytes,
    styles: Iterable[ProtectedStyle],
    vision: VisionOracleClient,
) -> Optional[FingerprintResult]:
    """Call the classifier of each style that has one; failures propagate."""
    for style in styles:
        if not style.classifier_ref:
            continue
        labels = await vision.classify(image, style.classifier_ref)
        for item in labels:
            if item.confidence > CLASSIFIER_CONFIDENCE_BOUND and _names_style(item.label, style):
                return FingerprintResult(
                    style_id=style.style_id,
                    similarity=min(1.0, item.confidence / 100.0),
                    stage=MatchStage.CLASSIFIER,
                )
    return None


def embedding_stage(
    vector: Sequence[float],
    styles: Iterable[ProtectedStyle],
    bound: float,
) -> FingerprintResult:
    best_sim = -1.0
    best_id: Optional[str] = None
    for style in styles:
        for stored in style.embeddings:
            if len(stored) != len(vector):
                continue
            sim = imaging.cosine(vector, stored)
            if sim > best_sim:
                best_sim, best_id = sim, style.style_id
    if best_id is not None and best_sim > bound:
        return FingerprintResult(
            style_id=best_id,
            similarity=min(1.0, best_sim),
            stage=MatchStage.EMBEDDING,
        )
    return FingerprintResult.no_match()


class Fingerprinter:
    def __init__(
        self,
        vision: VisionOracleClient,
        thresholds: ThresholdStore,
        *,
        max_image_pixels: int = imaging.MAX_IMAGE_PIXELS,
    ) -> None:
        self._vision = vision
        self._thresholds = thresholds
        self.max_image_pixels = int(max_image_pixels)

    def _decode_and_hash(self, image_bytes: bytes) -> Tuple[Image.Image, str]:
        img = imaging.load_image(image_bytes, self.max_image_pixels)
        return img, imaging.perceptual_hash(img)

    async def match(
        self, image_bytes: bytes, active_styles: Sequence[ProtectedStyle]
    ) -> FingerprintResult:
        """Run the stages in order; raises FingerprintError on undecodable input.

        Decoding, hashing and embedding run in worker threads so a caller's
        timeout can fire while they are in progress.
        """
        img, image_hash = await asyncio.to_thread(self._decode_and_hash, image_bytes)
        styles = [s for s in active_styles if s.active]
        if not styles:
            return FingerprintResult.no_match()

        hit = hash_stage(image_hash, styles)
        if hit is not None:
            return hit

        hit = await classifier_stage(image_bytes, styles, self._vision)
        if hit is not None:
            return hit

        bound = self._thresholds.snapshot().resolve(ViolationCategory.IP_MIMICRY)
        vector = await asyncio.to_thread(imaging.embed, img)
        return embedding_stage(vector, styles, bound)
