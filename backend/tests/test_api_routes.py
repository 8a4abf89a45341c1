"""
test_api_routes.py: HTTP-level tests for the FastAPI app.

Services behind the routes are swapped with app.dependency_overrides so no
model provider or Supabase project is contacted.
"""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeResolver, FakeStorage
from app.api.deps import (
    get_analysis_processor,
    get_batch_manager,
    get_storage_client,
    get_usage_tracker,
)
from app.main import app
from app.services.analysis import AnalysisProcessor
from app.services.batch_upload import BatchUploadManager
from app.services.errors import AIServiceError, ErrorKind, StorageError
from app.services.llm_client import LLMResponse
from app.services.usage_tracker import UsageTracker


class StaticClient:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error

    async def generate(self, images, prompt, model=None):
        if self.error is not None:
            raise self.error
        return LLMResponse(self.text, "gemini/test-model")


class RecordingStorage(FakeStorage):
    def __init__(self, delete_error=None):
        super().__init__()
        self.deleted = []
        self.delete_error = delete_error

    async def delete_asset(self, path):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(path)


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use_model_answer(text=None, error=None):
    app.dependency_overrides[get_analysis_processor] = lambda: AnalysisProcessor(
        client=StaticClient(text, error)
    )


class TestParseRoute:

    def test_parse_direct_json(self, client):
        raw = json.dumps({"description": "Sofa", "condition": {"summary": "ok", "rating": "FAIR"}, "cleanliness": "dirty"})

        response = client.post("/api/analysis/parse", json={"raw_text": raw})

        assert response.status_code == 200
        body = response.json()
        assert body["method"] == "direct_json"
        assert body["data"]["condition"]["rating"] == "fair"
        assert body["data"]["cleanliness"] == "not_clean"

    def test_parse_never_fails(self, client):
        response = client.post("/api/analysis/parse", json={"raw_text": ""})
        assert response.status_code == 200
        assert response.json()["method"] == "fallback"
        assert response.json()["requires_review"] is True


class TestProcessRoute:

    def test_process_returns_record(self, client):
        _use_model_answer('{"description": "Mirror", "condition": {"summary": "ok", "rating": "good"}, "cleanliness": "professional clean"}')

        response = client.post("/api/analysis/process", json={"images": ["abc"], "room_type": "bathroom"})

        assert response.status_code == 200
        body = response.json()
        assert body["model_used"] == "gemini/test-model"
        assert body["parsed_data"]["cleanliness"] == "professional_clean"
        assert "processingMetadata" in body["parsed_data"]["analysisMetadata"]

    @pytest.mark.parametrize("kind, status", [
        (ErrorKind.RATE_LIMITED, 429),
        (ErrorKind.TIMEOUT, 504),
        (ErrorKind.BUDGET_EXCEEDED, 402),
        (ErrorKind.AUTHENTICATION, 502),
    ])
    def test_ai_errors_mapped_to_status(self, client, kind, status):
        _use_model_answer(error=AIServiceError("boom", kind=kind))

        response = client.post("/api/analysis/process", json={"images": ["abc"]})

        assert response.status_code == status
        assert response.json()["detail"]["kind"] == kind.value

    def test_empty_images_rejected_by_schema(self, client):
        response = client.post("/api/analysis/process", json={"images": []})
        assert response.status_code == 422

    def test_too_many_images(self, client):
        _use_model_answer("{}")
        response = client.post("/api/analysis/process", json={"images": ["x"] * 21})
        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "invalid_request"


class TestCrossValidateRoute:

    def test_returns_camel_case_result(self, client):
        assessment = {"description": "Oak table", "condition": {"rating": "good"}, "cleanliness": "domestic_clean"}

        response = client.post("/api/analysis/cross-validate", json={"assessments": [assessment, assessment]})

        assert response.status_code == 200
        body = response.json()
        assert body["recommendedAction"] == "accept"
        assert body["isConsistent"] is True


class TestUploadRoutes:

    def test_batch_upload(self, client, no_sleep, data_urls):
        storage = FakeStorage(fail_payloads={b"two"})
        app.dependency_overrides[get_batch_manager] = lambda: BatchUploadManager(
            storage, FakeResolver(), notifier=lambda message: None,
        )

        response = client.post(
            "/api/uploads/batch",
            json={"image_urls": data_urls + ["https://cdn.test/x.jpg"], "report_id": "r1", "room_id": "room1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["failed_uploads"] == [data_urls[1]]
        assert len(body["uploaded_urls"]) == 3
        assert body["uploaded_urls"][0] == "https://cdn.test/x.jpg"

        metrics = client.get("/metrics").json()
        assert metrics["images_uploaded"] == 2
        assert metrics["images_failed"] == 1

    def test_batch_that_cannot_run_returns_inputs(self, client, no_sleep, data_urls):
        """A name lookup outage is a total failure: 200 with the inputs handed back, not an HTTP error."""
        resolver = FakeResolver(error=StorageError("rooms lookup failed", kind=ErrorKind.NETWORK))
        app.dependency_overrides[get_batch_manager] = lambda: BatchUploadManager(
            FakeStorage(), resolver, notifier=lambda message: None,
        )

        response = client.post(
            "/api/uploads/batch",
            json={"image_urls": data_urls, "report_id": "r1", "room_id": "room1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total_failure"] is True
        assert body["uploaded_urls"] == data_urls
        assert body["failed_uploads"] == []
        assert client.get("/metrics").json()["images_failed"] == 3

    def test_delete_asset(self, client):
        storage = RecordingStorage()
        app.dependency_overrides[get_storage_client] = lambda: storage

        response = client.request("DELETE", "/api/uploads", json={"path": "inspector/a/b.png"})

        assert response.status_code == 204
        assert storage.deleted == ["inspector/a/b.png"]

    def test_delete_error_mapped(self, client):
        storage = RecordingStorage(delete_error=StorageError("missing", kind=ErrorKind.NOT_FOUND))
        app.dependency_overrides[get_storage_client] = lambda: storage

        response = client.request("DELETE", "/api/uploads", json={"path": "nope.png"})

        assert response.status_code == 404


class TestServiceRoutes:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_usage(self, client):
        usage = UsageTracker(daily_budget=1.0, monthly_budget=10.0)
        usage.record_usage("gemini", 0.25)
        app.dependency_overrides[get_usage_tracker] = lambda: usage

        body = client.get("/api/usage").json()

        assert body["daily"]["calls"] == 1
        assert body["budget_status"]["daily_remaining"] == 0.75
