"""Tests for the HTTP surface of the intake service."""

import asyncio
import logging
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

import main
from config import settings
from intake_client import IntakeClient

PDF = ("policy.pdf", b"%PDF-1.4 fake", "application/pdf")
JPEG = ("card.jpg", b"\xff\xd8\xff\xe0fake", "image/jpeg")


@pytest.fixture
def api(monkeypatch):
    monkeypatch.setattr(settings, "INTAKE_SERVICE_URL", "http://fake-intake:8080")
    monkeypatch.setattr(settings, "STAGE_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(IntakeClient, "health", AsyncMock(return_value={"status": "healthy"}))
    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def remote(api, scan_payload):
    """Route intake service calls by path to canned responses."""

    def route(url, **kwargs):
        if url == "/scan":
            return httpx.Response(200, json=scan_payload)
        if url == "/upload":
            return httpx.Response(200, json={"id": "rec-1"})
        if url == "/recognize-and-extract":
            return httpx.Response(200, json={"success": True, "document": {"id": "doc-7"}})
        return httpx.Response(404, json={"detail": "not found"})

    with patch.object(main._intake_client._client, "post", side_effect=route) as post:
        yield post


class TestUnconfigured:
    def test_intake_returns_503(self, monkeypatch):
        monkeypatch.setattr(settings, "INTAKE_SERVICE_URL", "")
        with TestClient(main.app) as client:
            resp = client.post("/api/v1/intake", files={"file": PDF})
            health = client.get("/health").json()

        assert resp.status_code == 503
        assert health["intake_available"] is False


class TestIntake:
    def test_pdf_reaches_review(self, api, remote):
        resp = api.post("/api/v1/intake", files={"file": PDF})

        assert resp.status_code == 200
        body = resp.json()
        assert body["stage"] == "review"
        assert body["document_type"] == "insurance_card"
        assert body["file"] == {"filename": "policy.pdf", "content_type": "application/pdf", "size": 13}
        assert body["review"]["total_fields"] == 4
        assert body["can_skip"] is False

    def test_edit_then_save(self, api, remote):
        session_id = api.post("/api/v1/intake", files={"file": PDF}).json()["session_id"]

        edited = api.put(f"/api/v1/intake/{session_id}/fields", json={"values": {"holderName": "Jane Doe"}})
        assert edited.status_code == 200
        holder = [
            field
            for section in edited.json()["review"]["sections"]
            for field in section["fields"]
            if field["name"] == "holderName"
        ][0]
        assert holder["value"] == "Jane Doe"

        saved = api.post(f"/api/v1/intake/{session_id}/save")
        assert saved.status_code == 200
        assert saved.json()["stage"] == "complete"
        assert saved.json()["saved_record"]["fields"]["holderName"] == "Jane Doe"
        assert saved.json()["review"] is None

        again = api.post(f"/api/v1/intake/{session_id}/save")
        assert again.status_code == 409

    def test_image_fast_path(self, api, remote):
        body = api.post("/api/v1/intake", files={"file": JPEG}).json()

        assert body["stage"] == "complete"
        assert body["path"] == "fast"
        assert body["saved_record"] == {"id": "doc-7"}

    def test_quick_upload_confirm(self, api, remote):
        body = api.post("/api/v1/intake", files={"file": JPEG}, data={"quick": "true"}).json()
        assert body["stage"] == "preview_confirm"
        session_id = body["session_id"]

        blank = api.post(f"/api/v1/intake/{session_id}/confirm", json={"name": " "})
        assert blank.status_code == 400

        confirmed = api.post(
            f"/api/v1/intake/{session_id}/confirm",
            json={"name": "Insurance card", "expiration_date": "2027-01-31", "domain": "insurance"},
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["stage"] == "complete"
        assert confirmed.json()["saved_record"]["expiration_date"] == "2027-01-31"

    def test_rejected_file(self, api, remote):
        resp = api.post("/api/v1/intake", files={"file": ("notes.txt", b"hello", "text/plain")})

        assert resp.status_code == 400
        assert "PDF or image" in resp.json()["detail"]
        remote.assert_not_called()

    def test_remote_failure_then_retry(self, api, remote, scan_payload):
        remote.side_effect = lambda url, **kwargs: httpx.Response(500, json={"detail": "OCR crashed"})
        failed = api.post("/api/v1/intake", files={"file": PDF}).json()
        assert failed["stage"] == "error"
        assert failed["error_kind"] == "remote"
        assert failed["error"] == "OCR crashed"

        remote.side_effect = lambda url, **kwargs: httpx.Response(200, json=scan_payload)
        retried = api.post(f"/api/v1/intake/{failed['session_id']}/retry")
        assert retried.json()["stage"] == "review"

    def test_skip_not_available_in_review(self, api, remote):
        session_id = api.post("/api/v1/intake", files={"file": PDF}).json()["session_id"]
        assert api.post(f"/api/v1/intake/{session_id}/skip").status_code == 409

    def test_unknown_session(self, api):
        assert api.get("/api/v1/intake/nope").status_code == 404
        assert api.delete("/api/v1/intake/nope").status_code == 404

    def test_delete_forgets_session(self, api, remote):
        session_id = api.post("/api/v1/intake", files={"file": PDF}).json()["session_id"]

        assert api.delete(f"/api/v1/intake/{session_id}").json() == {"session_id": session_id, "closed": True}
        assert api.get(f"/api/v1/intake/{session_id}").status_code == 404

    def test_failed_save_stays_in_review(self, api, remote, scan_payload):
        session_id = api.post("/api/v1/intake", files={"file": PDF}).json()["session_id"]
        api.put(f"/api/v1/intake/{session_id}/fields", json={"values": {"holderName": "Jane Doe"}})

        def storage_down(url, **kwargs):
            if url == "/upload":
                return httpx.Response(500, json={"detail": "Storage offline"})
            return httpx.Response(200, json=scan_payload)

        remote.side_effect = storage_down
        failed = api.post(f"/api/v1/intake/{session_id}/save").json()
        assert failed["stage"] == "review"
        assert failed["error"].startswith("Failed to save document")
        assert failed["review"] is not None
        assert session_id in main._sessions

        remote.side_effect = lambda url, **kwargs: httpx.Response(200, json={"id": "rec-2"})
        saved = api.post(f"/api/v1/intake/{session_id}/save").json()
        assert saved["stage"] == "complete"
        assert saved["saved_record"]["fields"]["holderName"] == "Jane Doe"


class TestSessionRegistry:
    def test_saved_sessions_leave_the_registry(self, api, remote):
        session_ids = []
        for _ in range(3):
            session_id = api.post("/api/v1/intake", files={"file": PDF}).json()["session_id"]
            assert api.post(f"/api/v1/intake/{session_id}/save").status_code == 200
            session_ids.append(session_id)

        assert main._sessions == {}
        assert list(main._completed) == session_ids
        assert api.get("/health").json()["active_sessions"] == 0
        for session_id in session_ids:
            body = api.get(f"/api/v1/intake/{session_id}").json()
            assert body["stage"] == "complete"
            assert body["saved_record"]["id"] == "rec-1"

    def test_completed_views_are_bounded(self, api, remote, monkeypatch):
        monkeypatch.setattr(settings, "COMPLETED_SESSIONS_KEPT", 2)

        session_ids = [
            api.post("/api/v1/intake", files={"file": JPEG}).json()["session_id"] for _ in range(3)
        ]

        assert main._sessions == {}
        assert list(main._completed) == session_ids[1:]
        assert api.get(f"/api/v1/intake/{session_ids[0]}").status_code == 404
        assert api.get(f"/api/v1/intake/{session_ids[2]}").json()["stage"] == "complete"

    def test_open_sessions_stay_registered(self, api, remote):
        session_id = api.post("/api/v1/intake", files={"file": PDF}).json()["session_id"]

        assert session_id in main._sessions
        assert session_id not in main._completed

    def test_delete_completed_session(self, api, remote):
        session_id = api.post("/api/v1/intake", files={"file": JPEG}).json()["session_id"]

        assert api.delete(f"/api/v1/intake/{session_id}").status_code == 200
        assert session_id not in main._completed
        assert api.get(f"/api/v1/intake/{session_id}").status_code == 404


class TestBackgroundTasks:
    def test_failure_is_logged(self, caplog):
        async def broken():
            raise RuntimeError("scan exploded")

        async def run():
            main._track("s1", broken())
            await asyncio.wait({main._tasks["s1"]})
            await asyncio.sleep(0)

        with caplog.at_level(logging.ERROR, logger="main"):
            asyncio.run(run())

        assert "Background intake failed: session=s1" in caplog.text
        assert "scan exploded" in caplog.text
        assert "s1" not in main._tasks

    def test_finished_task_is_forgotten_quietly(self, caplog):
        async def fine():
            return None

        async def run():
            main._track("s2", fine())
            await asyncio.wait({main._tasks["s2"]})
            await asyncio.sleep(0)

        with caplog.at_level(logging.ERROR, logger="main"):
            asyncio.run(run())

        assert "Background intake failed" not in caplog.text
        assert "s2" not in main._tasks


class TestExpiration:
    def test_finds_date(self, api):
        resp = api.post("/api/v1/expiration", json={"text": "Policy expires 2031-07-01"})
        assert resp.json() == {"expiration_date": "2031-07-01", "raw_text": "2031-07-01"}

    def test_no_date(self, api):
        resp = api.post("/api/v1/expiration", json={"text": "no dates here"})
        assert resp.json() == {"expiration_date": None, "raw_text": None}


class TestHealth:
    def test_health(self, api):
        body = api.get("/health").json()
        assert body["status"] == "healthy"
        assert body["intake_available"] is True
        assert body["intake_health"] == {"status": "healthy"}
