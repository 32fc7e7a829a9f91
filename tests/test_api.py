"""
Tests for PDF Merge Backend API endpoints.

Tests cover:
- Health check
- App token management (admin)
- Batch submission, status, download and deletion
- Synchronous merge
"""

import time
from datetime import timedelta

from pdf_merge_backend.main import engine
from pdf_merge_backend.models import JobStatus
from pdf_merge_backend.utils import utc_now

from fakes import FakeResponse, make_pdf, page_widths

HOOK = "https://hooks.example.com/batch"


def _auth(token):
    return {"X-API-Key": token}


def _submit(client, token, groups, **extra):
    payload = {"webhook_url": HOOK, "groups": groups, **extra}
    return client.post("/batch", json=payload, headers=_auth(token))


def _wait_for_posts(session, url, count=1):
    for _ in range(100):
        if len(session.calls_for(url, method="POST")) >= count:
            break
        time.sleep(0.05)
    return session.calls_for(url, method="POST")


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestAppManagement:
    """Tests for the /admin/apps endpoints."""

    def test_create_app_requires_admin_key(self, client):
        response = client.post("/admin/apps", json={"name": "x"})
        assert response.status_code == 401

    def test_create_app_with_invalid_admin_key(self, client):
        response = client.post("/admin/apps", json={"name": "x"}, headers=_auth("invalid-key"))
        assert response.status_code == 401

    def test_create_and_list_apps(self, client, master_key):
        response = client.post("/admin/apps", json={"name": "reports"}, headers=_auth(master_key))
        assert response.status_code == 201

        data = response.json()
        assert len(data["token"]) == 64
        assert data["app"]["name"] == "reports"
        assert data["app"]["prefix"] == data["token"][:8]

        listed = client.get("/admin/apps", headers=_auth(master_key)).json()
        assert data["app"]["id"] in [app["id"] for app in listed]

    def test_revoked_app_cannot_authenticate(self, client, master_key):
        created = client.post("/admin/apps", json={"name": "temp"}, headers=_auth(master_key)).json()
        token, app_id = created["token"], created["app"]["id"]

        response = client.post(f"/admin/apps/{app_id}/revoke", headers=_auth(master_key))
        assert response.status_code == 200
        assert response.json() == {"status": "revoked"}

        response = client.get("/batch/anything", headers=_auth(token))
        assert response.status_code == 401

    def test_revoke_unknown_app(self, client, master_key):
        response = client.post("/admin/apps/missing/revoke", headers=_auth(master_key))
        assert response.status_code == 404

    def test_delete_app_with_jobs_is_refused(self, client, master_key):
        created = client.post("/admin/apps", json={"name": "busy"}, headers=_auth(master_key)).json()
        _submit(client, created["token"], [{"name": "a", "sources": ["https://files.example.com/a.pdf"]}])

        response = client.delete(f"/admin/apps/{created['app']['id']}", headers=_auth(master_key))
        assert response.status_code == 400

    def test_delete_app_without_jobs(self, client, master_key):
        created = client.post("/admin/apps", json={"name": "idle"}, headers=_auth(master_key)).json()

        response = client.delete(f"/admin/apps/{created['app']['id']}", headers=_auth(master_key))
        assert response.status_code == 200
        assert response.json()["deleted"] is True

    def test_stats(self, client, master_key):
        response = client.get("/admin/stats", headers=_auth(master_key))
        assert response.status_code == 200
        assert set(response.json()["groups"]) == {"pending", "processing", "completed", "failed"}


class TestBatchSubmission:
    """Tests for POST /batch."""

    def test_requires_app_token(self, client):
        groups = [{"name": "a", "sources": ["https://files.example.com/1.pdf"]}]
        response = client.post("/batch", json={"webhook_url": HOOK, "groups": groups})
        assert response.status_code == 401

        response = _submit(client, "wrong-token", groups)
        assert response.status_code == 401

    def test_submit_returns_queued_job(self, client, app_token):
        response = _submit(client, app_token, [
            {"name": "invoice-1", "sources": ["https://files.example.com/1.pdf"]},
            {"name": "invoice_2", "sources": ["https://files.example.com/2.pdf", "https://files.example.com/3.pdf"]},
        ])

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "queued"
        assert data["group_count"] == 2
        assert data["job_id"]

    def test_rejects_unsafe_group_name(self, client, app_token):
        response = _submit(client, app_token, [{"name": "../etc", "sources": ["https://files.example.com/1.pdf"]}])
        assert response.status_code == 422

    def test_rejects_duplicate_group_names(self, client, app_token):
        group = {"name": "same", "sources": ["https://files.example.com/1.pdf"]}
        response = _submit(client, app_token, [group, group])
        assert response.status_code == 422

    def test_rejects_invalid_urls(self, client, app_token):
        response = _submit(client, app_token, [{"name": "a", "sources": ["ftp://files.example.com/1.pdf"]}])
        assert response.status_code == 422

        response = client.post(
            "/batch",
            json={"webhook_url": "not-a-url", "groups": [{"name": "a", "sources": ["https://files.example.com/1.pdf"]}]},
            headers=_auth(app_token),
        )
        assert response.status_code == 422

    def test_rejects_empty_groups(self, client, app_token):
        assert _submit(client, app_token, []).status_code == 422
        assert _submit(client, app_token, [{"name": "a", "sources": []}]).status_code == 422


class TestBatchLifecycle:
    """Status, download and deletion of a submitted job."""

    def test_status_of_queued_job(self, client, app_token):
        job_id = _submit(client, app_token, [{"name": "a", "sources": ["https://files.example.com/1.pdf"]}]).json()["job_id"]

        response = client.get(f"/batch/{job_id}", headers=_auth(app_token))

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "queued"
        assert data["progress"] == {"total": 1, "completed": 0, "failed": 0}
        assert data["groups"][0]["status"] == "pending"
        assert data["groups"][0]["download_url"] is None

    def test_status_of_unknown_job(self, client, app_token):
        response = client.get("/batch/does-not-exist", headers=_auth(app_token))
        assert response.status_code == 404

    def test_jobs_are_private_to_their_app(self, client, master_key, app_token):
        job_id = _submit(client, app_token, [{"name": "a", "sources": ["https://files.example.com/1.pdf"]}]).json()["job_id"]
        other = client.post("/admin/apps", json={"name": "other"}, headers=_auth(master_key)).json()["token"]

        assert client.get(f"/batch/{job_id}", headers=_auth(other)).status_code == 404

    def test_processed_job_can_be_downloaded(self, client, app_token, engine_sessions):
        sources, webhooks = engine_sessions
        sources.routes["https://files.example.com/p1.pdf"] = FakeResponse(200, make_pdf(width=111))
        sources.routes["https://files.example.com/p2.pdf"] = FakeResponse(200, make_pdf(width=222))
        sources.routes["https://files.example.com/missing.pdf"] = FakeResponse(404, reason="Not Found")
        webhooks.routes[HOOK] = FakeResponse(200)

        job_id = _submit(client, app_token, [
            {"name": "report", "sources": ["https://files.example.com/p1.pdf", "https://files.example.com/missing.pdf", "https://files.example.com/p2.pdf"]},
            {"name": "nothing", "sources": ["https://files.example.com/missing.pdf"]},
        ]).json()["job_id"]

        assert engine.orchestrator.process_job(job_id) == JobStatus.PARTIAL
        assert len(_wait_for_posts(webhooks, HOOK)) == 1

        status = client.get(f"/batch/{job_id}", headers=_auth(app_token)).json()
        assert status["status"] == "partial"
        assert status["progress"] == {"total": 2, "completed": 1, "failed": 1}
        report, nothing = status["groups"]
        assert report["download_url"] == f"http://testserver/batch/{job_id}/download/report"
        assert report["failed_sources"] == [
            {"index": 1, "url": "https://files.example.com/missing.pdf", "error": "HTTP 404 Not Found"}
        ]
        assert nothing["status"] == "failed"
        assert nothing["error"] == "All source downloads failed"

        response = client.get(f"/batch/{job_id}/download/report", headers=_auth(app_token))
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert page_widths(response.content) == [111, 222]

        assert client.get(f"/batch/{job_id}/download/nothing", headers=_auth(app_token)).status_code == 404
        assert client.get(f"/batch/{job_id}/download/unknown", headers=_auth(app_token)).status_code == 404

        # Processed jobs keep their history
        assert client.delete(f"/batch/{job_id}", headers=_auth(app_token)).status_code == 409

    def test_expired_job_returns_gone(self, client, app_token, engine_sessions):
        sources, webhooks = engine_sessions
        sources.routes["https://files.example.com/e.pdf"] = FakeResponse(200, make_pdf())
        webhooks.routes[HOOK] = FakeResponse(200)

        job_id = _submit(client, app_token, [{"name": "old", "sources": ["https://files.example.com/e.pdf"]}]).json()["job_id"]
        assert engine.orchestrator.process_job(job_id) == JobStatus.COMPLETED
        _wait_for_posts(webhooks, HOOK)

        engine.store.update_job(job_id, expires_at=utc_now() - timedelta(minutes=1))
        # Past retention but not yet swept
        assert client.get(f"/batch/{job_id}/download/old", headers=_auth(app_token)).status_code == 410

        assert job_id in engine.reaper.expire_jobs()
        response = client.get(f"/batch/{job_id}/download/old", headers=_auth(app_token))
        assert response.status_code == 410
        assert client.get(f"/batch/{job_id}", headers=_auth(app_token)).json()["status"] == "expired"

    def test_delete_queued_job(self, client, app_token):
        job_id = _submit(client, app_token, [{"name": "a", "sources": ["https://files.example.com/1.pdf"]}]).json()["job_id"]

        response = client.delete(f"/batch/{job_id}", headers=_auth(app_token))
        assert response.status_code == 200
        assert response.json() == {"id": job_id, "deleted": True}

        assert client.get(f"/batch/{job_id}", headers=_auth(app_token)).status_code == 404
        assert client.delete(f"/batch/{job_id}", headers=_auth(app_token)).status_code == 404


class TestMerge:
    """Tests for the synchronous /merge endpoint."""

    def test_merge_returns_pdf(self, client, engine_sessions):
        sources, _ = engine_sessions
        sources.routes["https://files.example.com/m1.pdf"] = FakeResponse(200, make_pdf(width=101))
        sources.routes["https://files.example.com/m2.pdf"] = FakeResponse(200, make_pdf(width=202, pages=2))

        response = client.post("/merge", json={
            "title": "Annual Report 2024",
            "sources": ["https://files.example.com/m1.pdf", "https://files.example.com/m2.pdf"],
        })

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert 'filename="Annual-Report-2024.pdf"' in response.headers["content-disposition"]
        assert page_widths(response.content) == [101, 202, 202]

    def test_merge_fails_when_any_source_fails(self, client, engine_sessions):
        sources, _ = engine_sessions
        sources.routes["https://files.example.com/ok.pdf"] = FakeResponse(200, make_pdf())
        sources.routes["https://files.example.com/gone.pdf"] = FakeResponse(410, reason="Gone")

        response = client.post("/merge", json={
            "title": "x",
            "sources": ["https://files.example.com/ok.pdf", "https://files.example.com/gone.pdf"],
        })

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["failures"] == [
            {"index": 1, "url": "https://files.example.com/gone.pdf", "error": "HTTP 410 Gone"}
        ]

    def test_merge_validates_request(self, client):
        assert client.post("/merge", json={"title": "x", "sources": []}).status_code == 422
