"""FastAPI dependency providers: per-process services and error translation."""
from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException

from app.services.analysis import AnalysisProcessor
from app.services.batch_upload import BatchUploadManager
from app.services.cross_validation import CrossImageValidator
from app.services.errors import ErrorKind, InspectionServiceError, user_message
from app.services.llm_client import LLMClient
from app.services.response_parser import ResponseParser
from app.services.storage_client import StorageClient
from app.services.usage_tracker import RateLimiter, UsageTracker

_KIND_STATUS = {
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.NETWORK: 502,
    ErrorKind.AUTHENTICATION: 502,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.CONTENT_REJECTED: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.BUDGET_EXCEEDED: 402,
    ErrorKind.UNKNOWN: 500,
}

_storage: Optional[StorageClient] = None


def http_status_for(error: InspectionServiceError) -> int:
    return _KIND_STATUS.get(error.kind, 500)


def http_error(error: InspectionServiceError) -> HTTPException:
    return HTTPException(
        status_code=http_status_for(error),
        detail={"error": user_message(error), "kind": error.kind.value},
    )


@lru_cache(maxsize=1)
def get_usage_tracker() -> UsageTracker:
    return UsageTracker()


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    return RateLimiter()


@lru_cache(maxsize=1)
def get_response_parser() -> ResponseParser:
    return ResponseParser()


@lru_cache(maxsize=1)
def get_cross_validator() -> CrossImageValidator:
    return CrossImageValidator()


def get_analysis_processor(
    usage: UsageTracker = Depends(get_usage_tracker),
    limiter: RateLimiter = Depends(get_rate_limiter),
    parser: ResponseParser = Depends(get_response_parser),
    validator: CrossImageValidator = Depends(get_cross_validator),
) -> AnalysisProcessor:
    return AnalysisProcessor(
        client=LLMClient(usage=usage, rate_limiter=limiter),
        parser=parser,
        validator=validator,
    )


def get_storage_client() -> StorageClient:
    global _storage
    if _storage is None:
        _storage = StorageClient()
    return _storage


def get_batch_manager(storage: StorageClient = Depends(get_storage_client)) -> BatchUploadManager:
    return BatchUploadManager(storage)


async def close_services() -> None:
    """Release pooled connections; called from the app lifespan on shutdown."""
    global _storage
    if _storage is not None:
        await _storage.aclose()
        _storage = None
