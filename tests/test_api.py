"""HTTP admin surface: submission, inspection, cancellation, statistics and progress streaming."""

import uuid

import pytest
from httpx import ASGITransport, AsyncClient

from mediaqueue.dependencies import get_job_service
from mediaqueue.main import app
from mediaqueue.services.errors import CancellationConflict


@pytest.fixture
async def client(service):
    app.dependency_overrides[get_job_service] = lambda: service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def _payload(**overrides):
    body = {
        "user_id": "user-1",
        "job_type": "audio_analysis",
        "media_type": "audio",
        "file_id": "file-3",
        "config": {"priority": 7},
    }
    body.update(overrides)
    return body


async def test_health(client):
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}

    resp = await client.get("/api/v1/health/db")
    assert resp.json() == {"database": "ok"}


async def test_create_and_fetch_job(client):
    resp = await client.post("/api/v1/jobs", json=_payload())

    assert resp.status_code == 201
    created = resp.json()
    assert created["status"] == "pending"
    assert created["priority"] == 7
    assert created["source"] == {"kind": "file", "file_id": "file-3"}
    assert "X-Request-ID" in resp.headers

    resp = await client.get(f"/api/v1/jobs/{created['id']}")
    assert resp.status_code == 200
    assert resp.json()["id"] == created["id"]


async def test_invalid_submissions_are_rejected(client):
    resp = await client.post("/api/v1/jobs", json=_payload(job_type="hologram_analysis"))
    assert resp.status_code == 422
    assert resp.json()["code"] == "INVALID_JOB_TYPE"

    resp = await client.post("/api/v1/jobs", json=_payload(content_id="c-1"))
    assert resp.status_code == 422
    assert resp.json()["code"] == "AMBIGUOUS_SOURCE"

    resp = await client.post("/api/v1/jobs", json=_payload(config={"priority": "high"}))
    assert resp.status_code == 422
    assert resp.json()["code"] == "INVALID_JOB_CONFIG"

    resp = await client.post("/api/v1/jobs", json=_payload(config={"stages": "ocr_extraction"}))
    assert resp.status_code == 422
    assert resp.json()["code"] == "INVALID_JOB_CONFIG"

    resp = await client.get("/api/v1/jobs", params={"user_id": "user-1"})
    assert resp.json()["total"] == 0


async def test_unknown_job_is_404(client):
    resp = await client.get(f"/api/v1/jobs/{uuid.uuid4()}")

    assert resp.status_code == 404
    assert resp.json()["code"] == "JOB_NOT_FOUND"


async def test_list_jobs_with_filters(client):
    await client.post("/api/v1/jobs", json=_payload())
    await client.post("/api/v1/jobs", json=_payload(user_id="user-2", job_type="image_analysis", media_type="image"))

    resp = await client.get("/api/v1/jobs", params={"job_type": "image_analysis"})
    body = resp.json()
    assert body["total"] == 1
    assert body["items"][0]["user_id"] == "user-2"

    resp = await client.get("/api/v1/jobs", params={"status_filter": "pending", "page_size": 1})
    body = resp.json()
    assert body["total"] == 2
    assert len(body["items"]) == 1
    assert body["page_size"] == 1

    resp = await client.get("/api/v1/jobs", params={"page": 0})
    assert resp.status_code == 422


async def test_cancel_job_then_cancel_again_conflicts(client):
    job_id = (await client.post("/api/v1/jobs", json=_payload())).json()["id"]

    resp = await client.post(f"/api/v1/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    assert resp.json() == {"message": "Job cancelled"}

    resp = await client.post(f"/api/v1/jobs/{job_id}/cancel")
    assert resp.status_code == 409
    assert resp.json()["details"] == {"current_state": "cancelled"}

    resp = await client.post(f"/api/v1/jobs/{uuid.uuid4()}/cancel")
    assert resp.status_code == 404


async def test_cancel_that_never_lands_is_a_conflict(client, service, monkeypatch):
    job_id = (await client.post("/api/v1/jobs", json=_payload())).json()["id"]

    async def contended(job_id):
        raise CancellationConflict(job_id, 5)

    monkeypatch.setattr(service, "cancel_job", contended)

    resp = await client.post(f"/api/v1/jobs/{job_id}/cancel")

    assert resp.status_code == 409
    assert resp.json()["code"] == "CANCELLATION_CONFLICT"
    assert resp.json()["details"] == {"job_id": job_id}
    assert (await client.get(f"/api/v1/jobs/{job_id}")).json()["status"] == "pending"


async def test_statistics_endpoint(client):
    await client.post("/api/v1/jobs", json=_payload())
    await client.post("/api/v1/jobs", json=_payload(user_id="user-2"))

    resp = await client.get("/api/v1/jobs/statistics", params={"user_id": "user-2"})

    assert resp.status_code == 200
    stats = resp.json()
    assert stats["total_jobs"] == 1
    assert stats["by_status"]["pending"] == 1
    assert stats["by_job_type"]["audio_analysis"] == 1


async def test_progress_stream_ends_on_terminal_status(client):
    job_id = (await client.post("/api/v1/jobs", json=_payload())).json()["id"]
    await client.post(f"/api/v1/jobs/{job_id}/cancel")

    resp = await client.get(f"/api/v1/jobs/{job_id}/progress")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert "event: progress" in resp.text
    assert '"status": "cancelled"' in resp.text
