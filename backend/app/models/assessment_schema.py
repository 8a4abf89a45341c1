"""
Assessment record schemas for the inspection pipeline.

These Pydantic models are the contract between the vision-model parser, the
cross-image validator and the HTTP layer. Every record serialises with
camelCase aliases (model_dump(by_alias=True)) so the front end receives the
same keys the model was prompted to produce.

Usage:
    from app.models.assessment_schema import AssessmentRecord

    record = AssessmentRecord.model_validate(normalized_dict)
    payload = record.model_dump(by_alias=True, exclude_none=True)
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


ConditionRating = Literal["excellent", "good", "fair", "poor", "critical"]

Cleanliness = Literal[
    "professional_clean",
    "professional_clean_with_omissions",
    "domestic_clean_high_level",
    "domestic_clean",
    "not_clean",
]

PointCategory = Literal["structural", "functional", "aesthetic", "safety"]
PointSeverity = Literal["minor", "moderate", "major", "critical"]

DefectCategory = Literal["structural", "surface", "functional", "aesthetic"]
DefectSeverity = Literal["CRITICAL", "MAJOR", "MODERATE", "MINOR", "TRACE"]
RepairUrgency = Literal["IMMEDIATE", "HIGH", "MEDIUM", "LOW"]
EstimatedCost = Literal["HIGH", "MEDIUM", "LOW"]

CONDITION_RATINGS: tuple[str, ...] = ("excellent", "good", "fair", "poor", "critical")
CLEANLINESS_LEVELS: tuple[str, ...] = (
    "professional_clean",
    "professional_clean_with_omissions",
    "domestic_clean_high_level",
    "domestic_clean",
    "not_clean",
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Condition ─────────────────────────────────────────────────────────────────

class ConditionPoint(CamelModel):
    """A structured observation inside a condition block."""
    label: str
    category: Optional[PointCategory] = None
    severity: Optional[PointSeverity] = None
    validation_status: Optional[Literal["confirmed", "unconfirmed"]] = None
    supporting_image_count: Optional[int] = Field(None, ge=0)


class ConditionDetails(CamelModel):
    structural_integrity: str = "Assessment completed"
    functional_performance: str = "Assessment completed"
    aesthetic_condition: str = "Assessment completed"
    safety_assessment: str = "Assessment completed"


class Condition(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    summary: str
    points: List[Union[str, ConditionPoint]] = Field(default_factory=list)
    rating: ConditionRating
    details: Optional[ConditionDetails] = None


# ── Defects ───────────────────────────────────────────────────────────────────

class DefectLocation(CamelModel):
    area: str = "unspecified"
    extent: str = "localized"
    coordinates: Optional[Dict[str, float]] = None


class DefectRecord(CamelModel):
    id: str
    category: DefectCategory = "surface"
    type: str = "general"
    severity: DefectSeverity = "MINOR"
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    location: DefectLocation = Field(default_factory=DefectLocation)
    description: str = "Defect observed"
    supporting_evidence: int = Field(0, ge=0)
    repair_urgency: RepairUrgency = "LOW"
    estimated_cost: EstimatedCost = "LOW"


# ── Records ───────────────────────────────────────────────────────────────────

class ComponentAssessment(CamelModel):
    """One item of a multi-component scene, flattened."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    component_id: str
    inferred_type: str = "Component"
    description: str
    condition: Condition
    cleanliness: Cleanliness
    estimated_age: str = "Unknown"


class AssessmentRecord(CamelModel):
    """
    The flat record every parse strategy converges on.

    Unknown keys the model emitted are preserved (extra="allow") so nothing
    is silently dropped before manual review.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    description: str
    condition: Condition
    cleanliness: Cleanliness
    defects: Optional[List[DefectRecord]] = None
    components: Optional[List[ComponentAssessment]] = None
    analysis_metadata: Optional[Dict[str, Any]] = None


# ── Cross-image validation ────────────────────────────────────────────────────

class ImageMetadata(CamelModel):
    timestamp: Optional[float] = Field(None, description="Capture time, epoch milliseconds")
    lighting_condition: Optional[str] = None
    angle: Optional[str] = None
    quality: Optional[float] = Field(None, ge=0.0, le=1.0)


class ConsistencyScores(CamelModel):
    material: float
    condition: float
    cleanliness: float
    lighting: float
    temporal: float


class ValidationResult(CamelModel):
    is_consistent: bool
    confidence: Literal["high", "medium", "low"]
    discrepancies: List[str] = Field(default_factory=list)
    recommended_action: Literal["accept", "review", "retake"]
    validation_score: float = Field(..., ge=0.0, le=1.0)
    scores: Optional[ConsistencyScores] = None
