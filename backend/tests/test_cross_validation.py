"""
test_cross_validation.py: Tests for CrossImageValidator.

Tests cover:
  - consistent sets accepted, divergent sets sent for retake
  - sub-score bands (material, condition spread, lighting, temporal)
  - source cap and determinism
"""

import pytest

from app.models.assessment_schema import AssessmentRecord, ImageMetadata
from app.services.cross_validation import CrossImageValidator, extract_material

MINUTE_MS = 60 * 1000


def _assessment(description, rating, cleanliness="domestic_clean"):
    return {
        "description": description,
        "condition": {"summary": "Assessed", "points": [], "rating": rating},
        "cleanliness": cleanliness,
    }


@pytest.fixture
def validator():
    return CrossImageValidator()


class TestValidate:

    def test_consistent_images_accepted(self, validator):
        assessments = [_assessment("Oak door", "good") for _ in range(3)]

        result = validator.validate(assessments)

        assert result.is_consistent
        assert result.confidence == "high"
        assert result.discrepancies == []
        assert result.recommended_action == "accept"
        assert result.validation_score == pytest.approx(0.84)

    def test_divergent_images_need_retake(self, validator):
        assessments = [
            _assessment("Steel frame", "excellent", "professional_clean"),
            _assessment("Glass panel", "poor", "not_clean"),
            _assessment("Oak door", "critical", "domestic_clean"),
        ]
        metadata = [
            {"timestamp": 0, "lightingCondition": "daylight", "angle": "front"},
            {"timestamp": 20 * MINUTE_MS, "lightingCondition": "artificial", "angle": "left"},
            {"timestamp": 60 * MINUTE_MS, "lightingCondition": "flash", "angle": "right"},
        ]

        result = validator.validate(assessments, metadata)

        assert not result.is_consistent
        assert result.confidence == "low"
        assert result.recommended_action == "retake"
        assert result.validation_score == pytest.approx(0.38)
        assert result.discrepancies == [
            "Material identification inconsistent across images",
            "Condition ratings vary significantly between images",
            "Cleanliness assessment inconsistent",
        ]
        assert result.scores.lighting == pytest.approx(0.6)
        assert result.scores.temporal == 0.5

    def test_mild_disagreement_goes_to_review(self, validator):
        assessments = [
            _assessment("Pine shelf", "good", "domestic_clean"),
            _assessment("Pine shelf", "fair", "not_clean"),
        ]

        result = validator.validate(assessments)

        assert result.confidence == "medium"
        assert result.discrepancies == []
        assert result.recommended_action == "review"
        assert result.is_consistent
        assert result.validation_score == pytest.approx(0.74)

    def test_only_first_sources_considered(self):
        assessments = [_assessment("Oak door", "good")] * 5 + [_assessment("Oak door", "critical")] * 2
        result = CrossImageValidator(max_sources=5).validate(assessments)
        assert result.scores.condition == 0.9

    def test_accepts_pydantic_records(self, validator):
        records = [AssessmentRecord.model_validate(_assessment("Brass handle", "fair")) for _ in range(2)]
        metadata = [ImageMetadata(timestamp=0), ImageMetadata(timestamp=MINUTE_MS)]

        result = validator.validate(records, metadata)

        assert result.scores.material == 0.9
        assert result.scores.temporal == 0.9

    def test_deterministic(self, validator):
        assessments = [_assessment("Tile floor", "fair"), _assessment("Marble floor", "poor")]
        assert validator.validate(assessments) == validator.validate(assessments)

    def test_score_in_unit_interval(self, validator):
        result = validator.validate([])
        assert 0.0 <= result.validation_score <= 1.0


class TestSubScores:

    @pytest.mark.parametrize("ratings, expected", [
        (["good", "good"], 0.9),
        (["good", "fair"], 0.7),
        (["good", "poor"], 0.4),
        (["excellent", "fair", "poor"], 0.2),
    ])
    def test_condition_spread(self, ratings, expected):
        assessments = [_assessment("x", r) for r in ratings]
        assert CrossImageValidator.condition_consistency(assessments) == expected

    def test_material_bands(self):
        two = [{"description": "Oak"}, {"description": "Steel"}]
        assert CrossImageValidator.material_consistency(two) == 0.6
        unknown = [{"description": "Thing"}, {"description": None}]
        assert CrossImageValidator.material_consistency(unknown) == 0.9

    def test_lighting_penalties(self):
        metadata = [
            ImageMetadata(lighting_condition=light, angle=angle)
            for light, angle in [("a", "1"), ("b", "2"), ("c", "3"), ("a", "4")]
        ]
        assert CrossImageValidator.lighting_adjustment(metadata) == pytest.approx(0.5)
        assert CrossImageValidator.lighting_adjustment([]) == 0.8

    @pytest.mark.parametrize("span_minutes, expected", [(2, 0.9), (10, 0.7), (45, 0.5)])
    def test_temporal_bands(self, span_minutes, expected):
        metadata = [ImageMetadata(timestamp=0), ImageMetadata(timestamp=span_minutes * MINUTE_MS)]
        assert CrossImageValidator.temporal_consistency(metadata) == expected

    def test_recommended_action(self):
        assert CrossImageValidator.recommended_action("high", 0, 0.85) == "accept"
        assert CrossImageValidator.recommended_action("high", 1, 0.85) == "review"
        assert CrossImageValidator.recommended_action("medium", 3, 0.7) == "retake"
        assert CrossImageValidator.recommended_action("medium", 0, 0.3) == "retake"


def test_extract_material():
    assert extract_material("Solid OAK worktop") == "oak"
    assert extract_material("Mystery object") is None
    assert extract_material(None) is None
