"""
Pytest configuration and fixtures for PDF Merge Backend tests.
"""

import os
import shutil
import tempfile
from datetime import timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="pdf_merge_test_")
os.environ["ADMIN_API_KEY"] = "test-master-key-12345"
os.environ["DATABASE_PATH"] = os.path.join(_TEST_ROOT, "pdf_merge.db")
os.environ["BATCH_STORAGE_PATH"] = os.path.join(_TEST_ROOT, "batches")
os.environ["BASE_URL"] = "http://testserver"
os.environ["BATCH_WORKER_ENABLED"] = "false"
os.environ["FETCH_RETRY_DELAY"] = "0"

from pdf_merge_backend.database import JobStore  # noqa: E402
from pdf_merge_backend.fetcher import Fetcher  # noqa: E402
from pdf_merge_backend.group_processor import GroupProcessor  # noqa: E402
from pdf_merge_backend.main import app, engine  # noqa: E402
from pdf_merge_backend.notifier import WebhookNotifier  # noqa: E402
from pdf_merge_backend.orchestrator import JobOrchestrator  # noqa: E402

from fakes import FakeSession  # noqa: E402

BASE_URL = "http://testserver"


@pytest.fixture(scope="session", autouse=True)
def test_root():
    """Remove the temporary database and storage after the session."""
    yield Path(_TEST_ROOT)
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def store(tmp_path):
    """A fresh job store in its own database file."""
    return JobStore(tmp_path / "jobs.db")


@pytest.fixture
def storage_root(tmp_path):
    path = tmp_path / "batches"
    path.mkdir()
    return path


@pytest.fixture
def source_session():
    return FakeSession()


@pytest.fixture
def webhook_session():
    return FakeSession()


@pytest.fixture
def fetcher(source_session):
    """Fetcher over the fake session; retries never sleep."""
    return Fetcher(timeout=1, retries=3, retry_delay=0, session=source_session, sleep=lambda _: None)


@pytest.fixture
def notifier(webhook_session):
    notifier = WebhookNotifier(timeout=1, session=webhook_session)
    yield notifier
    notifier.shutdown(wait=True)


@pytest.fixture
def orchestrator(store, fetcher, notifier, storage_root):
    return JobOrchestrator(
        store=store,
        group_processor=GroupProcessor(store, fetcher, concurrency=2),
        notifier=notifier,
        storage_root=storage_root,
        file_ttl=timedelta(hours=24),
        base_url=BASE_URL,
    )


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def master_key():
    """Return the admin API key."""
    return "test-master-key-12345"


@pytest.fixture
def app_token(client, master_key):
    """Create an app and return its raw token."""
    response = client.post(
        "/admin/apps",
        json={"name": "test-app"},
        headers={"X-API-Key": master_key},
    )
    assert response.status_code == 201
    return response.json()["token"]


@pytest.fixture
def engine_sessions(monkeypatch):
    """Route the app's outbound requests through fake sessions."""
    sources = FakeSession()
    webhooks = FakeSession()
    monkeypatch.setattr(engine.fetcher, "session", sources)
    monkeypatch.setattr(engine.fetcher, "_sleep", lambda _: None)
    monkeypatch.setattr(engine.notifier, "session", webhooks)
    return sources, webhooks
