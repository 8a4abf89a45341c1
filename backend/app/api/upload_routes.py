"""Upload API routes: batch photo upload and asset deletion."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from app.api.deps import get_batch_manager, get_storage_client, http_error
from app.services.batch_upload import BatchUploadManager, BatchUploadOptions, upload_or_keep_inputs
from app.services.errors import InspectionServiceError
from app.services.perf_monitor import tracker
from app.services.storage_client import StorageClient, is_data_url

router = APIRouter(prefix="/api/uploads", tags=["Uploads"])
logger = logging.getLogger("inspection-api.upload-routes")


class BatchUploadRequest(BaseModel):
    image_urls: List[str]
    report_id: str
    room_id: str
    property_name: Optional[str] = None
    room_name: Optional[str] = None
    component_name: Optional[str] = None
    max_concurrent: Optional[int] = Field(None, ge=1, le=10)


class DeleteAssetRequest(BaseModel):
    path: str = Field(..., min_length=1)


@router.post("/batch")
async def upload_batch(
    body: BatchUploadRequest,
    manager: BatchUploadManager = Depends(get_batch_manager),
):
    """
    Store every data-URL image. Partial failures come back in failed_uploads;
    a batch that cannot run at all returns the inputs with total_failure set.
    """
    result = await upload_or_keep_inputs(
        manager,
        body.image_urls,
        body.report_id,
        body.room_id,
        property_name=body.property_name,
        room_name=body.room_name,
        component_name=body.component_name,
        options=BatchUploadOptions(max_concurrent=body.max_concurrent),
    )

    pending = sum(1 for u in body.image_urls if is_data_url(u))
    if result.total_failure:
        tracker.record_batch(0, pending, 0)
    else:
        tracker.record_batch(pending - len(result.failed_uploads), len(result.failed_uploads), result.total_retries)
    return result.to_dict()


@router.delete("", status_code=204)
async def delete_asset(
    body: DeleteAssetRequest,
    storage: StorageClient = Depends(get_storage_client),
):
    try:
        await storage.delete_asset(body.path)
    except InspectionServiceError as exc:
        raise http_error(exc)
    return Response(status_code=204)
