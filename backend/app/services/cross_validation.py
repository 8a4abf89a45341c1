"""
Cross-image consistency check for multi-photo assessments of one component.

Five sub-scores in [0, 1] are computed from the per-image records and their
capture metadata; the weighted average picks the confidence tier and the
plain mean becomes validation_score. Pure and deterministic: the same inputs
always give the same ValidationResult.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel

from app import config
from app.models.assessment_schema import ConsistencyScores, ImageMetadata, ValidationResult

logger = logging.getLogger("inspection-api.validation")

MATERIAL_KEYWORDS: tuple[str, ...] = (
    "wood", "wooden", "timber", "oak", "pine", "mahogany",
    "metal", "steel", "aluminum", "iron", "brass", "copper",
    "plastic", "vinyl", "pvc", "acrylic",
    "glass", "glazed", "crystal",
    "fabric", "textile", "cloth", "canvas", "leather",
    "ceramic", "porcelain", "tile", "clay",
    "stone", "marble", "granite", "slate", "concrete",
    "laminate", "veneer", "composite",
)

RATING_ORDER: tuple[str, ...] = ("excellent", "good", "fair", "poor", "critical")

WEIGHTS = {
    "material": 0.3,
    "condition": 0.3,
    "cleanliness": 0.2,
    "lighting": 0.1,
    "temporal": 0.1,
}

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6

FIVE_MINUTES_MS = 5 * 60 * 1000
THIRTY_MINUTES_MS = 30 * 60 * 1000

DISCREPANCY_RULES: tuple[tuple[str, float, str], ...] = (
    ("material", 0.5, "Material identification inconsistent across images"),
    ("condition", 0.4, "Condition ratings vary significantly between images"),
    ("cleanliness", 0.5, "Cleanliness assessment inconsistent"),
    ("lighting", 0.4, "Lighting conditions may be affecting analysis accuracy"),
    ("temporal", 0.5, "Images taken over extended time period may show changes"),
)


def _as_dict(value: Any) -> dict:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True)
    return value if isinstance(value, dict) else {}


def extract_material(description: Any) -> Optional[str]:
    if not isinstance(description, str):
        return None
    lowered = description.lower()
    return next((m for m in MATERIAL_KEYWORDS if m in lowered), None)


def _distinct(values: Iterable[Any]) -> set:
    return {v for v in values if v}


class CrossImageValidator:
    def __init__(self, max_sources: Optional[int] = None):
        self.max_sources = max_sources or config.CROSS_VALIDATION_MAX_SOURCES

    # ── Sub-scores ────────────────────────────────────────────────────────────

    @staticmethod
    def material_consistency(assessments: list[dict]) -> float:
        materials = _distinct(extract_material(a.get("description")) for a in assessments)
        if len(materials) <= 1:
            return 0.9
        if len(materials) == 2:
            return 0.6
        return 0.3

    @staticmethod
    def condition_consistency(assessments: list[dict]) -> float:
        ratings = _distinct(_as_dict(a.get("condition")).get("rating") for a in assessments)
        if len(ratings) <= 1:
            return 0.9
        if len(ratings) == 2:
            indices = [RATING_ORDER.index(r) for r in ratings if r in RATING_ORDER]
            spread = max(indices) - min(indices) if len(indices) == 2 else 0
            return 0.7 if spread <= 1 else 0.4
        return 0.2

    @staticmethod
    def cleanliness_consistency(assessments: list[dict]) -> float:
        levels = _distinct(a.get("cleanliness") for a in assessments)
        if len(levels) <= 1:
            return 0.8
        if len(levels) == 2:
            return 0.5
        return 0.3

    @staticmethod
    def lighting_adjustment(metadata: list[ImageMetadata]) -> float:
        score = 0.8
        if len(_distinct(m.lighting_condition for m in metadata)) > 2:
            score -= 0.2
        if len(_distinct(m.angle for m in metadata)) > 3:
            score -= 0.1
        return max(round(score, 4), 0.3)

    @staticmethod
    def temporal_consistency(metadata: list[ImageMetadata]) -> float:
        timestamps = sorted(m.timestamp for m in metadata if m.timestamp is not None)
        if len(timestamps) < 2:
            return 0.8
        span = timestamps[-1] - timestamps[0]
        if span < FIVE_MINUTES_MS:
            return 0.9
        if span < THIRTY_MINUTES_MS:
            return 0.7
        return 0.5

    # ── Aggregation ───────────────────────────────────────────────────────────

    @staticmethod
    def confidence_tier(scores: dict[str, float]) -> str:
        weighted = sum(scores[key] * weight for key, weight in WEIGHTS.items())
        if weighted >= HIGH_CONFIDENCE:
            return "high"
        if weighted >= MEDIUM_CONFIDENCE:
            return "medium"
        return "low"

    @staticmethod
    def recommended_action(confidence: str, discrepancy_count: int, score: float) -> str:
        if confidence == "high" and discrepancy_count == 0 and score > 0.8:
            return "accept"
        if confidence == "low" or discrepancy_count > 2 or score < 0.4:
            return "retake"
        return "review"

    def validate(
        self,
        assessments: list[Union[dict, BaseModel]],
        metadata: Optional[list[Union[dict, ImageMetadata]]] = None,
    ) -> ValidationResult:
        records = [_as_dict(a) for a in assessments[: self.max_sources]]
        image_meta = [
            m if isinstance(m, ImageMetadata) else ImageMetadata.model_validate(m)
            for m in (metadata or [])[: self.max_sources]
        ]

        scores = {
            "material": self.material_consistency(records),
            "condition": self.condition_consistency(records),
            "cleanliness": self.cleanliness_consistency(records),
            "lighting": self.lighting_adjustment(image_meta),
            "temporal": self.temporal_consistency(image_meta),
        }

        confidence = self.confidence_tier(scores)
        discrepancies = [message for key, limit, message in DISCREPANCY_RULES if scores[key] < limit]
        score = round(sum(scores.values()) / len(scores), 4)

        result = ValidationResult(
            is_consistent=len(discrepancies) < 2 and score > 0.6,
            confidence=confidence,
            discrepancies=discrepancies,
            recommended_action=self.recommended_action(confidence, len(discrepancies), score),
            validation_score=score,
            scores=ConsistencyScores(**scores),
        )
        logger.info(
            f"Cross-validated {len(records)} assessments: score={score} confidence={confidence} "
            f"discrepancies={len(discrepancies)} action={result.recommended_action}"
        )
        return result
