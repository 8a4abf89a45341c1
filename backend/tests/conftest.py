"""
conftest.py: Shared pytest fixtures for the inspection backend test suite.

No live Supabase project or model provider is touched: storage is replaced by
in-memory fakes or an httpx.MockTransport, and litellm is monkeypatched.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import base64
import random
import sys
import os
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


def make_data_url(payload: bytes, content_type: str = "image/png") -> str:
    return f"data:{content_type};base64,{base64.b64encode(payload).decode()}"


# ---------------------------------------------------------------------------
# Sleep patching
# ---------------------------------------------------------------------------

@pytest.fixture
def no_sleep(monkeypatch):
    """
    Replace asyncio.sleep inside the retry and batch modules with a no-op
    that records the requested delays.
    """
    import app.services.retry as retry_module
    import app.services.batch_upload as batch_module

    delays = []

    class _FakeAsyncio:
        def __init__(self, real):
            self._real = real

        def __getattr__(self, name):
            return getattr(self._real, name)

        async def sleep(self, delay):
            delays.append(delay)

    monkeypatch.setattr(retry_module, "asyncio", _FakeAsyncio(retry_module.asyncio))
    monkeypatch.setattr(batch_module, "asyncio", _FakeAsyncio(batch_module.asyncio))
    return delays


# ---------------------------------------------------------------------------
# Storage fakes
# ---------------------------------------------------------------------------

class FakeStorage:
    """
    Stand-in for StorageClient. Payloads listed in ``fail_payloads`` always
    raise ``error_factory()``; everything else is stored in ``objects``.
    """

    def __init__(self, fail_payloads=(), error_factory=None, flaky_payloads=None):
        from app.services.errors import ErrorKind, StorageError

        self.fail_payloads = set(fail_payloads)
        # payload -> number of failures before succeeding
        self.flaky_payloads = dict(flaky_payloads or {})
        self.error_factory = error_factory or (
            lambda: StorageError("Service temporarily unavailable", kind=ErrorKind.SERVICE_UNAVAILABLE)
        )
        self.objects = {}
        self.calls = []

    async def upload_asset(self, data, path, content_type):
        self.calls.append(path)
        if data in self.fail_payloads:
            raise self.error_factory()
        if self.flaky_payloads.get(data, 0) > 0:
            self.flaky_payloads[data] -= 1
            raise self.error_factory()
        self.objects[path] = (data, content_type)
        return path

    def public_url(self, path):
        return f"https://store.test/public/{path}"


class FakeResolver:
    def __init__(self, names=None, error=None):
        from app.services.storage_client import ResolvedNames

        self.names = names or ResolvedNames("Flat 1", "Kitchen")
        self.error = error
        self.calls = 0

    async def resolve(self, room_id, property_name=None, room_name=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.names


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fake_resolver():
    return FakeResolver()


@pytest.fixture
def data_urls():
    """Three distinct PNG data URLs: payloads b"one", b"two", b"three"."""
    return [make_data_url(b"one"), make_data_url(b"two"), make_data_url(b"three")]


@pytest.fixture(autouse=True)
def _reset_metrics():
    from app.services.perf_monitor import tracker
    tracker.reset()
    yield
    tracker.reset()


@pytest.fixture
def rng():
    """Seeded RNG for jitter assertions."""
    return random.Random(42)
