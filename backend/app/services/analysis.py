"""
Image analysis entry point: prompt → vision model → parser cascade.

AnalysisProcessor.process_images() is what the /api/analysis/process route
calls. AI failures propagate as AIServiceError; parsing never fails, so a
successful model call always yields a record (possibly flagged for review).
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from app.models.assessment_schema import CLEANLINESS_LEVELS, CONDITION_RATINGS, ValidationResult
from app.services.cross_validation import CrossImageValidator
from app.services.errors import AIServiceError, ErrorKind, InspectionServiceError
from app.services.llm_client import LLMClient
from app.services.perf_monitor import ServiceMetricsTracker, timed_async, tracker
from app.services.response_parser import ResponseParser

logger = logging.getLogger("inspection-api.analysis")

MAX_IMAGES_PER_ANALYSIS = 20


@dataclass
class AnalysisOptions:
    room_type: str = "general"
    component_name: Optional[str] = None
    inventory_mode: bool = True
    use_advanced_analysis: bool = True
    image_count: int = 0


def validate_processing_options(options: AnalysisOptions) -> Optional[str]:
    """Return a human-readable problem with the options, or None."""
    if not options.room_type or not options.room_type.strip():
        return "Room type is required"
    if options.image_count < 1:
        return "At least one image is required"
    if options.image_count > MAX_IMAGES_PER_ANALYSIS:
        return f"Maximum {MAX_IMAGES_PER_ANALYSIS} images supported per analysis"
    return None


def build_assessment_prompt(options: AnalysisOptions) -> str:
    subject = options.component_name or "the main component"
    lines = [
        f"You are a property inventory inspector assessing {subject} in a {options.room_type.replace('_', ' ')}.",
        f"You are given {options.image_count} photo(s) of the same item.",
        "Respond with a single JSON object and nothing else:",
        "{",
        '  "description": "material, form and colour of the item",',
        '  "condition": {"summary": "...", "points": ["..."], "rating": "' + "|".join(CONDITION_RATINGS) + '"},',
        '  "cleanliness": "' + "|".join(CLEANLINESS_LEVELS) + '"',
        "}",
    ]
    if options.inventory_mode:
        lines.append(
            "If several distinct items are visible, instead return "
            '{"sceneSummary": {...}, "components": [{"inferredType", "description", "assessment": {...}}]}.'
        )
    if options.use_advanced_analysis:
        lines.append(
            'Also include "defects": [{"category", "type", "severity", "confidence", "location", '
            '"description", "repairUrgency", "estimatedCost"}] for every visible defect.'
        )
    return "\n".join(lines)


@dataclass
class AnalysisResult:
    parsed_data: dict
    model_used: str
    processing_time_ms: float
    parsing_method: str
    confidence: float
    requires_review: bool
    validation: Optional[ValidationResult] = None
    validation_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "parsed_data": self.parsed_data,
            "model_used": self.model_used,
            "processing_time_ms": self.processing_time_ms,
            "parsing_method": self.parsing_method,
            "confidence": self.confidence,
            "requires_review": self.requires_review,
            "validation": self.validation.model_dump(by_alias=True) if self.validation else None,
            "validation_errors": list(self.validation_errors),
        }


class AnalysisProcessor:
    def __init__(
        self,
        client: Optional[LLMClient] = None,
        parser: Optional[ResponseParser] = None,
        validator: Optional[CrossImageValidator] = None,
        metrics: Optional[ServiceMetricsTracker] = None,
    ):
        self.client = client or LLMClient()
        self.parser = parser or ResponseParser()
        self.validator = validator or CrossImageValidator()
        self.metrics = metrics or tracker

    @timed_async
    async def process_images(
        self,
        images: list[str],
        options: AnalysisOptions,
        per_image_assessments: Optional[list[dict]] = None,
        image_metadata: Optional[list[Any]] = None,
    ) -> AnalysisResult:
        options.image_count = len(images)
        problem = validate_processing_options(options)
        if problem:
            raise InspectionServiceError(problem, kind=ErrorKind.INVALID_REQUEST)

        start = time.perf_counter()
        try:
            response = await self.client.generate(images, build_assessment_prompt(options))
        except AIServiceError as exc:
            self.metrics.record_analysis_error(exc.kind.value)
            logger.error(f"Vision analysis failed for {options.component_name or 'component'}: {exc}")
            raise

        parsed = self.parser.parse_with_fallbacks(response.text)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)

        data = dict(parsed.data)
        metadata = dict(data.get("analysisMetadata") or {})
        metadata["processingMetadata"] = {
            "modelUsed": response.model,
            "processingTime": elapsed_ms,
            "parsingMethod": parsed.method,
            "confidence": parsed.confidence,
        }
        data["analysisMetadata"] = metadata

        validation = None
        if per_image_assessments and len(per_image_assessments) > 1:
            validation = self.validator.validate(per_image_assessments, image_metadata)

        self.metrics.record_analysis(elapsed_ms, parsed.method)
        logger.info(
            f"Analysed {len(images)} image(s) of {options.component_name or 'component'} "
            f"with {response.model} via {parsed.method}",
            extra={"duration_ms": elapsed_ms, "parsing_method": parsed.method},
        )

        return AnalysisResult(
            parsed_data=data,
            model_used=response.model,
            processing_time_ms=elapsed_ms,
            parsing_method=parsed.method,
            confidence=parsed.confidence,
            requires_review=parsed.requires_review,
            validation=validation,
            validation_errors=list(parsed.validation_errors),
        )
