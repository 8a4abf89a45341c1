"""
Remote asset store client: Supabase Storage + PostgREST over httpx.

Provides:
  - data URL decoding and folder path generation for inspection photos
  - StorageClient.upload_asset / delete_asset / public_url, each wrapped in
    with_retry() using the STORAGE profile
  - NameResolver: property/room display names for folder paths, looked up once
    per batch
  - upload_report_image(): decode → path → upload → public URL for one image

All failures surface as StorageError carrying an ErrorKind so the retry
executor never has to inspect message text.
"""
from __future__ import annotations

import base64
import binascii
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app import config
from app.services.errors import (
    ErrorKind,
    ImageDecodeError,
    StorageError,
    kind_from_status,
)
from app.services.retry import STORAGE_RETRY_POLICY, RetryPolicy, with_retry

logger = logging.getLogger("inspection-api.storage")

_DATA_URL_RE = re.compile(
    r"^\s*data:(image/[a-zA-Z0-9.+-]+);base64,(?P<data>.+)\s*$",
    flags=re.IGNORECASE | re.DOTALL,
)

EXTENSION_MAP: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "image/heic": "heic",
}

GENERIC_PROPERTY_NAMES = {"unknown_property", "property"}
GENERIC_ROOM_NAMES = {"unknown_room", "room"}


def is_data_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("data:")


def decode_data_url(data_url: str) -> tuple[str, str, bytes]:
    """Return (content_type, extension, raw bytes) for a base64 image data URL."""
    match = _DATA_URL_RE.match(data_url or "")
    if not match:
        raise ImageDecodeError("Images must be base64 data URLs (data:image/<type>;base64,...).")

    content_type = match.group(1).lower()
    encoded = re.sub(r"\s+", "", match.group("data"))
    try:
        payload = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageDecodeError("Image payload contains invalid base64 data.") from exc

    if not payload:
        raise ImageDecodeError("Image payload was empty.")

    return content_type, EXTENSION_MAP.get(content_type, "jpg"), payload


def clean_name_for_folder(name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9\s_-]", "", name or "")
    return re.sub(r"\s+", "_", cleaned.strip()).lower()


def generate_folder_path(
    report_id: str,
    room_id: str,
    property_name: Optional[str] = None,
    room_name: Optional[str] = None,
    component_name: Optional[str] = None,
    extension: Optional[str] = None,
    owner: Optional[str] = None,
) -> str:
    """owner/property/room/component/<uuid>.<ext> with id-based fallbacks."""
    owner_folder = clean_name_for_folder(owner or config.STORAGE_OWNER_FOLDER) or "inspector"
    property_folder = (
        clean_name_for_folder(property_name)
        if property_name and property_name.strip()
        else f"property_{(report_id or '')[:8]}"
    )
    room_folder = (
        clean_name_for_folder(room_name)
        if room_name and room_name.strip()
        else f"room_{(room_id or '')[:8]}"
    )
    component_folder = (
        clean_name_for_folder(component_name)
        if component_name and component_name.strip()
        else "general"
    )
    return f"{owner_folder}/{property_folder}/{room_folder}/{component_folder}/{uuid.uuid4()}.{extension or 'jpg'}"


@dataclass(frozen=True)
class ResolvedNames:
    property_name: str
    room_name: str

    @property
    def is_error(self) -> bool:
        return self.property_name.startswith("error_") or self.room_name.startswith("error_")

    @property
    def is_generic(self) -> bool:
        return self.property_name in GENERIC_PROPERTY_NAMES or self.room_name in GENERIC_ROOM_NAMES


def _storage_error_from_response(action: str, response: httpx.Response) -> StorageError:
    try:
        body = response.json()
        detail = body.get("message") or body.get("error") or response.text
    except ValueError:
        detail = response.text
    detail = str(detail)[:300]
    return StorageError(
        f"Storage {action} failed ({response.status_code}): {detail}",
        kind=kind_from_status(response.status_code),
        status_code=response.status_code,
    )


def _storage_error_from_transport(action: str, exc: httpx.TransportError) -> StorageError:
    kind = ErrorKind.TIMEOUT if isinstance(exc, httpx.TimeoutException) else ErrorKind.NETWORK
    return StorageError(f"Storage {action} failed: {type(exc).__name__}: {exc}", kind=kind)


class StorageClient:
    """
    Thin async wrapper over the Supabase Storage REST API.

    Pass `http_client` to share a connection pool or to inject an
    httpx.MockTransport in tests; otherwise the client owns its own
    httpx.AsyncClient and must be closed with aclose().
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        service_key: Optional[str] = None,
        bucket: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: RetryPolicy = STORAGE_RETRY_POLICY,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url if base_url is not None else config.SUPABASE_URL).rstrip("/")
        self.service_key = service_key if service_key is not None else config.SUPABASE_SERVICE_ROLE_KEY
        self.bucket = bucket or config.STORAGE_BUCKET
        self.retry_policy = retry_policy
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout or config.STORAGE_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.service_key)

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }
        if extra:
            headers.update(extra)
        return headers

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{path.lstrip('/')}"

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path.lstrip('/')}"

    async def _upload_once(self, data: bytes, path: str, content_type: str) -> str:
        try:
            response = await self._http.post(
                self._object_url(path),
                content=data,
                headers=self._headers({
                    "Content-Type": content_type,
                    "cache-control": f"max-age={config.STORAGE_CACHE_CONTROL}",
                    "x-upsert": "false",
                }),
            )
        except httpx.TransportError as exc:
            raise _storage_error_from_transport("upload", exc) from exc

        if response.status_code >= 400:
            raise _storage_error_from_response("upload", response)
        return path

    async def upload_asset(self, data: bytes, path: str, content_type: str) -> str:
        """Upload bytes to `path` inside the bucket. Returns the stored path."""
        if not self.configured:
            raise StorageError(
                "Storage is not configured (missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY).",
                kind=ErrorKind.AUTHENTICATION,
            )
        stored = await with_retry(
            lambda: self._upload_once(data, path, content_type),
            self.retry_policy,
        )
        logger.info(f"Uploaded {len(data)} bytes to {self.bucket}/{stored}")
        return stored

    async def _delete_once(self, path: str) -> None:
        try:
            response = await self._http.delete(self._object_url(path), headers=self._headers())
        except httpx.TransportError as exc:
            raise _storage_error_from_transport("delete", exc) from exc
        if response.status_code >= 400:
            raise _storage_error_from_response("delete", response)

    async def delete_asset(self, path: str) -> None:
        if not self.configured:
            raise StorageError("Storage is not configured.", kind=ErrorKind.AUTHENTICATION)
        await with_retry(lambda: self._delete_once(path), self.retry_policy)
        logger.info(f"Deleted {self.bucket}/{path}")

    async def fetch_row(self, table: str, row_id: str, columns: str) -> Optional[dict]:
        """Single-row PostgREST lookup by id. Returns None when no row matches."""
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            response = await self._http.get(
                url,
                params={"id": f"eq.{row_id}", "select": columns},
                headers=self._headers({"Accept": "application/json"}),
            )
        except httpx.TransportError as exc:
            raise _storage_error_from_transport(f"{table} lookup", exc) from exc
        if response.status_code >= 400:
            raise _storage_error_from_response(f"{table} lookup", response)

        rows = response.json()
        if isinstance(rows, list):
            return rows[0] if rows else None
        return rows if isinstance(rows, dict) else None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "StorageClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def _first_non_blank(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class NameResolver:
    """Resolves human-readable property/room names for storage folder paths."""

    def __init__(self, storage: StorageClient):
        self.storage = storage

    async def resolve(
        self,
        room_id: str,
        property_name: Optional[str] = None,
        room_name: Optional[str] = None,
    ) -> ResolvedNames:
        if (
            property_name and room_name
            and property_name.strip() and room_name.strip()
            and property_name not in GENERIC_PROPERTY_NAMES
            and room_name not in GENERIC_ROOM_NAMES
        ):
            return ResolvedNames(property_name.strip(), room_name.strip())

        if not room_id or not room_id.strip():
            logger.error("Cannot resolve folder names without a room id")
            return ResolvedNames("error_no_room_id", "error_no_room_id")

        room = await self.storage.fetch_row("rooms", room_id, "id,name,type,property_id")
        if not room:
            logger.error(f"Room not found: {room_id}")
            return ResolvedNames("error_room_not_found", "error_room_not_found")

        room_type = _first_non_blank(room.get("type"))
        resolved_room = _first_non_blank(room.get("name")) or (
            room_type.replace("_", " ") if room_type else "room_no_name"
        )

        prop = await self.storage.fetch_row("properties", str(room.get("property_id") or ""), "id,name,location,type")
        if not prop:
            logger.error(f"Property not found for room {room_id}")
            return ResolvedNames("error_property_not_found", resolved_room)

        resolved_property = _first_non_blank(
            prop.get("name"), prop.get("location"), prop.get("type"),
        ) or "property_no_name"

        return ResolvedNames(resolved_property, resolved_room)


async def upload_report_image(
    data_url: str,
    report_id: str,
    room_id: str,
    names: ResolvedNames,
    storage: StorageClient,
    component_name: Optional[str] = None,
) -> str:
    """Upload one data-URL image and return its public URL."""
    if names.is_error:
        logger.error(
            f"Name resolution failed: property={names.property_name!r} room={names.room_name!r}",
            extra={"report_id": report_id},
        )
    elif names.is_generic:
        logger.warning(
            f"Using generic folder names: property={names.property_name!r} room={names.room_name!r}",
            extra={"report_id": report_id},
        )

    content_type, extension, payload = decode_data_url(data_url)
    path = generate_folder_path(
        report_id,
        room_id,
        names.property_name,
        names.room_name,
        component_name,
        extension,
    )
    stored_path = await storage.upload_asset(payload, path, content_type)
    return storage.public_url(stored_path)
