"""Adapters to the external analysis capabilities (semantic + vision)."""

from app.services.oracles.score import (
    HttpScoreOracleClient,
    LocalRulesScoreOracle,
    ScoreOracleClient,
    SemanticAssessment,
    build_score_oracle,
)
from app.services.oracles.vision import (
    HttpVisionOracleClient,
    LabelScore,
    NullVisionOracle,
    VisionOracleClient,
    build_vision_oracle,
)

__all__ = [
    "HttpScoreOracleClient",
    "LocalRulesScoreOracle",
    "ScoreOracleClient",
    "SemanticAssessment",
    "build_score_oracle",
    "HttpVisionOracleClient",
    "LabelScore",
    "NullVisionOracle",
    "VisionOracleClient",
    "build_vision_oracle",
]
