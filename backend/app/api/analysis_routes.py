"""Analysis API routes: parse model text, analyse photos, cross-validate."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.deps import (
    get_analysis_processor,
    get_cross_validator,
    get_response_parser,
    get_usage_tracker,
    http_error,
)
from app.models.assessment_schema import ImageMetadata
from app.services.analysis import AnalysisOptions, AnalysisProcessor
from app.services.cross_validation import CrossImageValidator
from app.services.errors import InspectionServiceError
from app.services.response_parser import ResponseParser
from app.services.usage_tracker import UsageTracker

router = APIRouter(prefix="/api/analysis", tags=["Analysis"])
logger = logging.getLogger("inspection-api.analysis-routes")


class ParseRequest(BaseModel):
    raw_text: Optional[str] = ""


class ProcessRequest(BaseModel):
    images: List[str] = Field(..., min_length=1)
    room_type: str = "general"
    component_name: Optional[str] = None
    inventory_mode: bool = True
    use_advanced_analysis: bool = True
    per_image_assessments: Optional[List[Dict[str, Any]]] = None
    image_metadata: Optional[List[ImageMetadata]] = None


class CrossValidateRequest(BaseModel):
    assessments: List[Dict[str, Any]] = Field(..., min_length=1)
    metadata: List[ImageMetadata] = Field(default_factory=list)


@router.post("/parse")
async def parse_response(
    body: ParseRequest,
    parser: ResponseParser = Depends(get_response_parser),
):
    """Run the parser cascade over raw model text. Never fails."""
    return parser.parse_with_fallbacks(body.raw_text).to_dict()


@router.post("/process")
async def process_images(
    body: ProcessRequest,
    processor: AnalysisProcessor = Depends(get_analysis_processor),
):
    options = AnalysisOptions(
        room_type=body.room_type,
        component_name=body.component_name,
        inventory_mode=body.inventory_mode,
        use_advanced_analysis=body.use_advanced_analysis,
    )
    try:
        result = await processor.process_images(
            body.images, options, body.per_image_assessments, body.image_metadata,
        )
    except InspectionServiceError as exc:
        logger.warning(f"Analysis request failed: {exc!r}")
        raise http_error(exc)
    return result.to_dict()


@router.post("/cross-validate")
async def cross_validate(
    body: CrossValidateRequest,
    validator: CrossImageValidator = Depends(get_cross_validator),
):
    return validator.validate(body.assessments, body.metadata).model_dump(by_alias=True)


usage_router = APIRouter(prefix="/api", tags=["Usage"])


@usage_router.get("/usage")
async def usage_snapshot(usage: UsageTracker = Depends(get_usage_tracker)):
    return usage.snapshot()
