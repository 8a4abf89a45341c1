"""
test_storage.py: Tests for the Supabase Storage client helpers.

Tests cover:
  - decode_data_url / is_data_url
  - clean_name_for_folder and generate_folder_path fallbacks
  - StorageClient against httpx.MockTransport: headers, retries, error kinds
  - NameResolver PostgREST lookups and error markers
  - upload_report_image end to end
"""

import asyncio

import httpx
import pytest

from conftest import make_data_url
from app.services.errors import ErrorKind, ImageDecodeError, StorageError
from app.services.storage_client import (
    NameResolver,
    ResolvedNames,
    StorageClient,
    clean_name_for_folder,
    decode_data_url,
    generate_folder_path,
    is_data_url,
    upload_report_image,
)

BASE = "https://proj.supabase.test"


def _client(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StorageClient(base_url=BASE, service_key="service-key", bucket="inspection-images", http_client=http, **kwargs)


class TestDataUrls:

    def test_decodes_png(self):
        content_type, ext, payload = decode_data_url(make_data_url(b"hello"))
        assert (content_type, ext, payload) == ("image/png", "png", b"hello")

    def test_jpeg_extension(self):
        _, ext, _ = decode_data_url(make_data_url(b"x", "image/jpeg"))
        assert ext == "jpg"

    @pytest.mark.parametrize("bad", ["", "https://a.test/x.png", "data:image/png;base64,@@@@", "data:text/plain;base64,aGk="])
    def test_rejects_invalid(self, bad):
        with pytest.raises(ImageDecodeError) as info:
            decode_data_url(bad)
        assert info.value.kind is ErrorKind.INVALID_REQUEST

    def test_is_data_url(self):
        assert is_data_url("data:image/png;base64,AAAA")
        assert not is_data_url("https://a.test/x.png")
        assert not is_data_url(None)


class TestFolderPaths:

    def test_clean_name(self):
        assert clean_name_for_folder("  Flat 4B, Rose Court! ") == "flat_4b_rose_court"

    def test_full_path(self):
        path = generate_folder_path("report-1", "room-1", "Rose Court", "Master Bedroom", "Wardrobe Door", "webp")
        parts = path.split("/")
        assert parts[:4] == ["inspector", "rose_court", "master_bedroom", "wardrobe_door"]
        assert parts[4].endswith(".webp")

    def test_id_fallbacks(self):
        path = generate_folder_path("abcdef1234567", "room98765432", None, "  ", None, None)
        parts = path.split("/")
        assert parts[1:4] == ["property_abcdef12", "room_room9876", "general"]
        assert parts[4].endswith(".jpg")

    def test_unique_file_names(self):
        assert generate_folder_path("r", "m") != generate_folder_path("r", "m")


class TestStorageClient:

    def test_upload_sends_auth_and_returns_path(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["type"] = request.headers["content-type"]
            seen["body"] = request.content
            return httpx.Response(200, json={"Key": "inspection-images/a/b.png"})

        async def run():
            async with _client(handler) as client:
                return await client.upload_asset(b"img", "a/b.png", "image/png")

        assert asyncio.run(run()) == "a/b.png"
        assert seen["url"] == f"{BASE}/storage/v1/object/inspection-images/a/b.png"
        assert seen["auth"] == "Bearer service-key"
        assert seen["type"] == "image/png"
        assert seen["body"] == b"img"

    def test_transient_status_is_retried(self, no_sleep):
        statuses = [503, 200]

        def handler(request):
            return httpx.Response(statuses.pop(0), json={"message": "busy"})

        async def run():
            async with _client(handler) as client:
                return await client.upload_asset(b"img", "x.png", "image/png")

        assert asyncio.run(run()) == "x.png"
        assert statuses == []
        assert len(no_sleep) == 1

    def test_client_error_raises_once(self, no_sleep):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(400, json={"message": "Invalid key"})

        async def run():
            async with _client(handler) as client:
                await client.upload_asset(b"img", "x.png", "image/png")

        with pytest.raises(StorageError) as info:
            asyncio.run(run())
        assert info.value.kind is ErrorKind.INVALID_REQUEST
        assert info.value.status_code == 400
        assert "Invalid key" in str(info.value)
        assert len(calls) == 1

    def test_transport_error_maps_to_network(self, no_sleep):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async def run():
            async with _client(handler) as client:
                await client.upload_asset(b"img", "x.png", "image/png")

        with pytest.raises(StorageError) as info:
            asyncio.run(run())
        assert info.value.kind is ErrorKind.NETWORK

    def test_unconfigured_client_refuses(self):
        async def run():
            client = StorageClient(base_url="", service_key="", http_client=httpx.AsyncClient())
            try:
                await client.upload_asset(b"img", "x.png", "image/png")
            finally:
                await client._http.aclose()

        with pytest.raises(StorageError) as info:
            asyncio.run(run())
        assert info.value.kind is ErrorKind.AUTHENTICATION

    def test_delete_and_public_url(self):
        methods = []

        def handler(request):
            methods.append((request.method, request.url.path))
            return httpx.Response(200, json=[])

        async def run():
            async with _client(handler) as client:
                await client.delete_asset("a/b.png")
                return client.public_url("a/b.png")

        url = asyncio.run(run())
        assert methods == [("DELETE", "/storage/v1/object/inspection-images/a/b.png")]
        assert url == f"{BASE}/storage/v1/object/public/inspection-images/a/b.png"


def _rest_handler(rooms, properties):
    def handler(request):
        table = request.url.path.rsplit("/", 1)[-1]
        row_id = request.url.params["id"].removeprefix("eq.")
        rows = {"rooms": rooms, "properties": properties}[table]
        return httpx.Response(200, json=[rows[row_id]] if row_id in rows else [])
    return handler


class TestNameResolver:

    def test_caller_names_used_without_lookup(self):
        def handler(request):
            raise AssertionError("no lookup expected")

        async def run():
            async with _client(handler) as client:
                return await NameResolver(client).resolve("room-1", "Rose Court", "Kitchen")

        assert asyncio.run(run()) == ResolvedNames("Rose Court", "Kitchen")

    def test_generic_names_trigger_lookup(self):
        handler = _rest_handler(
            {"room-1": {"id": "room-1", "name": "", "type": "master_bedroom", "property_id": "p-1"}},
            {"p-1": {"id": "p-1", "name": None, "location": "12 High St", "type": "flat"}},
        )

        async def run():
            async with _client(handler) as client:
                return await NameResolver(client).resolve("room-1", "unknown_property", "room")

        assert asyncio.run(run()) == ResolvedNames("12 High St", "master bedroom")

    def test_error_markers(self):
        handler = _rest_handler({"room-2": {"id": "room-2", "name": "Hall", "property_id": "missing"}}, {})

        async def run():
            async with _client(handler) as client:
                resolver = NameResolver(client)
                return (
                    await resolver.resolve(""),
                    await resolver.resolve("nope"),
                    await resolver.resolve("room-2"),
                )

        no_id, no_room, no_property = asyncio.run(run())
        assert no_id.property_name == "error_no_room_id"
        assert no_room.room_name == "error_room_not_found"
        assert no_property == ResolvedNames("error_property_not_found", "Hall")
        assert no_property.is_error


class TestUploadReportImage:

    def test_uploads_and_returns_public_url(self):
        uploaded = []

        def handler(request):
            uploaded.append(request.url.path)
            return httpx.Response(200, json={})

        async def run():
            async with _client(handler) as client:
                return await upload_report_image(
                    make_data_url(b"photo", "image/jpeg"),
                    "report-1",
                    "room-1",
                    ResolvedNames("Rose Court", "Kitchen"),
                    client,
                    component_name="Sink",
                )

        url = asyncio.run(run())
        assert uploaded[0].startswith("/storage/v1/object/inspection-images/inspector/rose_court/kitchen/sink/")
        assert url.startswith(f"{BASE}/storage/v1/object/public/inspection-images/inspector/rose_court/kitchen/sink/")
        assert url.endswith(".jpg")
