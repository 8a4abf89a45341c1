"""
Batch Upload Manager: persists inspection photos with bounded concurrency.

Inputs are a mix of inline data URLs (need uploading) and already-remote URLs
(passed through untouched). Data URLs are uploaded in chunks of
`max_concurrent`; each upload is retried with the BATCH profile and one
failing asset never cancels its siblings. The caller gets back every URL it can
use plus the original strings of the assets that could not be stored.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from app import config
from app.services.retry import BATCH_RETRY_POLICY, RetryAttempt, RetryPolicy, with_retry
from app.services.storage_client import (
    NameResolver,
    ResolvedNames,
    StorageClient,
    is_data_url,
    upload_report_image,
)

logger = logging.getLogger("inspection-api.batch")

Notifier = Callable[[str], None]


@dataclass
class BatchUploadOptions:
    max_concurrent: Optional[int] = None
    on_progress: Optional[Callable[[int, int], None]] = None          # (completed, total)
    on_batch_complete: Optional[Callable[[int, int], None]] = None    # (batch_index, total_batches)


@dataclass
class BatchUploadResult:
    uploaded_urls: list[str] = field(default_factory=list)
    failed_uploads: list[str] = field(default_factory=list)
    total_attempts: int = 0
    total_retries: int = 0
    total_batches: int = 0
    notification: Optional[str] = None
    # Set when the batch could not run at all; uploaded_urls then holds the inputs unchanged.
    total_failure: bool = False
    error: Optional[str] = None

    @property
    def all_succeeded(self) -> bool:
        return not self.failed_uploads and not self.total_failure

    @classmethod
    def inputs_unchanged(cls, image_urls: list[str], error: str) -> "BatchUploadResult":
        return cls(
            uploaded_urls=list(image_urls),
            notification=f"Batch upload failed: {error}",
            total_failure=True,
            error=error,
        )

    def to_dict(self) -> dict:
        return {
            "uploaded_urls": list(self.uploaded_urls),
            "failed_uploads": list(self.failed_uploads),
            "total_attempts": self.total_attempts,
            "total_retries": self.total_retries,
            "total_batches": self.total_batches,
            "all_succeeded": self.all_succeeded,
            "notification": self.notification,
            "total_failure": self.total_failure,
            "error": self.error,
        }


def _log_notification(message: str) -> None:
    logger.info(message)


def _chunks(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchUploadManager:
    def __init__(
        self,
        storage: StorageClient,
        resolver: Optional[NameResolver] = None,
        max_concurrent: Optional[int] = None,
        batch_delay: Optional[float] = None,
        retry_policy: RetryPolicy = BATCH_RETRY_POLICY,
        notifier: Optional[Notifier] = None,
    ):
        self.storage = storage
        self.resolver = resolver or NameResolver(storage)
        self.max_concurrent = max(1, max_concurrent or config.BATCH_MAX_CONCURRENT)
        self.batch_delay = config.BATCH_DELAY_SECONDS if batch_delay is None else max(0.0, batch_delay)
        self.retry_policy = retry_policy
        self.notifier = notifier or _log_notification

    async def _upload_one(
        self,
        data_url: str,
        report_id: str,
        room_id: str,
        names: ResolvedNames,
        component_name: Optional[str],
        result: BatchUploadResult,
    ) -> str:
        def count_retries(progress: RetryAttempt) -> None:
            # Fires once before each attempt; anything past the first is a retry.
            if progress.error is None and progress.attempt > 1:
                result.total_retries += 1

        result.total_attempts += 1
        return await with_retry(
            lambda: upload_report_image(
                data_url, report_id, room_id, names, self.storage, component_name,
            ),
            self.retry_policy,
            on_progress=count_retries,
        )

    async def upload_multiple_images(
        self,
        image_urls: list[str],
        report_id: str,
        room_id: str,
        property_name: Optional[str] = None,
        room_name: Optional[str] = None,
        component_name: Optional[str] = None,
        options: Optional[BatchUploadOptions] = None,
    ) -> BatchUploadResult:
        """
        Upload every data URL in `image_urls`.

        Returned `uploaded_urls` lists the pass-through remote URLs first, then
        the newly uploaded ones. Order inside a chunk follows completion of the
        gather, not necessarily input order.
        """
        options = options or BatchUploadOptions()
        limit = max(1, options.max_concurrent or self.max_concurrent)

        pending = [url for url in image_urls if is_data_url(url)]
        existing = [url for url in image_urls if not is_data_url(url)]

        result = BatchUploadResult()
        if not pending:
            result.uploaded_urls = existing
            return result

        names = await self.resolver.resolve(room_id, property_name, room_name)

        batches = _chunks(pending, limit)
        result.total_batches = len(batches)
        uploaded: list[str] = []
        completed = 0

        logger.info(
            f"Uploading {len(pending)} images in {len(batches)} batches "
            f"(max {limit} concurrent, {len(existing)} already remote)",
            extra={"report_id": report_id},
        )

        for index, batch in enumerate(batches):
            outcomes = await asyncio.gather(
                *(
                    self._upload_one(url, report_id, room_id, names, component_name, result)
                    for url in batch
                ),
                return_exceptions=True,
            )

            for original, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        f"Image upload failed after retries: {type(outcome).__name__}: {outcome}",
                        extra={"report_id": report_id},
                    )
                    result.failed_uploads.append(original)
                else:
                    uploaded.append(outcome)

            completed += len(batch)
            if options.on_progress:
                options.on_progress(completed, len(pending))
            if options.on_batch_complete:
                options.on_batch_complete(index + 1, len(batches))

            if index < len(batches) - 1 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        result.uploaded_urls = existing + uploaded

        if uploaded:
            result.notification = (
                f"{len(uploaded)}/{len(pending)} images uploaded successfully "
                f"({result.total_retries} automatic retries) in {len(batches)} batches"
            )
            self.notifier(result.notification)

        if result.failed_uploads:
            logger.warning(
                f"{len(result.failed_uploads)}/{len(pending)} images could not be uploaded",
                extra={"report_id": report_id},
            )

        return result


async def upload_or_keep_inputs(
    manager: BatchUploadManager,
    image_urls: list[str],
    report_id: str,
    room_id: str,
    property_name: Optional[str] = None,
    room_name: Optional[str] = None,
    component_name: Optional[str] = None,
    options: Optional[BatchUploadOptions] = None,
) -> BatchUploadResult:
    """
    Run the batch; if it cannot run at all (name lookup down, storage
    unreachable before the first upload) return the inputs unchanged with
    total_failure set, so the report keeps its inline images.
    """
    try:
        return await manager.upload_multiple_images(
            image_urls, report_id, room_id, property_name, room_name, component_name, options,
        )
    except Exception as exc:
        logger.error(
            f"Batch upload failed: {type(exc).__name__}: {exc}",
            extra={"report_id": report_id},
            exc_info=True,
        )
        result = BatchUploadResult.inputs_unchanged(image_urls, str(exc))
        manager.notifier(result.notification)
        return result


async def upload_multiple_report_images(
    image_urls: list[str],
    report_id: str,
    room_id: str,
    property_name: Optional[str] = None,
    room_name: Optional[str] = None,
    component_name: Optional[str] = None,
    options: Optional[BatchUploadOptions] = None,
    manager: Optional[BatchUploadManager] = None,
) -> list[str]:
    """Flattened surface for callers that only want URLs back."""
    owned_storage: Optional[StorageClient] = None
    if manager is None:
        owned_storage = StorageClient()
        manager = BatchUploadManager(owned_storage)

    try:
        result = await upload_or_keep_inputs(
            manager, image_urls, report_id, room_id, property_name, room_name, component_name, options,
        )
        return result.uploaded_urls
    finally:
        if owned_storage is not None:
            await owned_storage.aclose()
