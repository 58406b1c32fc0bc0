"""HTTP tests for job submission, uploads and status polling."""

import hashlib

import pytest

from atelier.config import settings
from atelier.models.enums import JobState
from atelier.workers.pool import Worker


async def _submit(client, tenant_id="tnt_active", kind="generate", payload=None):
    return await client.post(
        "/api/v1/jobs",
        json={"tenant_id": tenant_id, "kind": kind, "payload": payload or {"prompt": "a red fox"}},
    )


@pytest.mark.asyncio
async def test_submit_returns_202_and_queued_status(client, seed_tenant):
    await seed_tenant()

    response = await _submit(client)

    assert response.status_code == 202
    body = response.json()
    assert body["job_id"].startswith("job_")
    assert body["state"] == "queued"

    status = await client.get(f"/api/v1/jobs/{body['job_id']}")
    assert status.status_code == 200
    data = status.json()
    assert data["state"] == "queued"
    assert data["tenant_id"] == "tnt_active"
    assert data["kind"] == "generate"
    assert data["attempts"] == 0
    assert "result" not in data
    assert "error" not in data


@pytest.mark.asyncio
async def test_submit_denied_for_inactive_billing(client, seed_tenant, count_jobs):
    await seed_tenant("tnt_lapsed", billing_status="past_due")

    response = await _submit(client, tenant_id="tnt_lapsed")

    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "ADMISSION_DENIED"
    assert error["details"] == {"reason": "billing_inactive"}
    assert error["trace_id"]
    assert await count_jobs() == 0


@pytest.mark.asyncio
async def test_submit_denied_over_quota(client, seed_tenant):
    await seed_tenant(usage_limit=1)
    assert (await _submit(client)).status_code == 202

    response = await _submit(client)

    assert response.status_code == 403
    assert response.json()["error"]["details"]["reason"] == "quota_exceeded"


@pytest.mark.asyncio
async def test_submit_unknown_tenant(client):
    response = await _submit(client, tenant_id="tnt_ghost")
    assert response.status_code == 403
    assert response.json()["error"]["details"]["reason"] == "tenant_unknown"


@pytest.mark.asyncio
async def test_submit_rejects_unknown_kind(client, seed_tenant, count_jobs):
    await seed_tenant()
    response = await _submit(client, kind="transcode")
    assert response.status_code == 422
    assert await count_jobs() == 0


@pytest.mark.asyncio
async def test_status_unknown_job_404(client):
    response = await client.get("/api/v1/jobs/job_doesnotexist")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_upload_creates_postprocess_and_describe_jobs(client, seed_tenant, storage):
    await seed_tenant()
    content = b"\x89PNG fake image bytes"

    response = await client.post(
        "/api/v1/jobs/upload",
        data={"tenant_id": "tnt_active", "auto_describe": "true"},
        files={"file": ("fox.png", content, "image/png")},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["asset_url"].startswith("/uploads/tnt_active/")
    assert body["describe_job_id"].startswith("job_")
    assert await storage.fetch(body["asset_url"]) == content

    upload = (await client.get(f"/api/v1/jobs/{body['job_id']}")).json()
    assert upload["kind"] == "upload-postprocess"
    describe = (await client.get(f"/api/v1/jobs/{body['describe_job_id']}")).json()
    assert describe["kind"] == "describe"
    assert describe["parent_job_id"] == body["job_id"]


@pytest.mark.asyncio
async def test_upload_non_image_skips_describe(client, seed_tenant):
    await seed_tenant()

    response = await client.post(
        "/api/v1/jobs/upload",
        data={"tenant_id": "tnt_active", "auto_describe": "true"},
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 202
    assert "describe_job_id" not in response.json() or response.json()["describe_job_id"] is None


@pytest.mark.asyncio
async def test_upload_rejects_empty_file(client, seed_tenant, count_jobs):
    await seed_tenant()

    response = await client.post(
        "/api/v1/jobs/upload",
        data={"tenant_id": "tnt_active"},
        files={"file": ("empty.png", b"", "image/png")},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
    assert await count_jobs() == 0


@pytest.mark.asyncio
async def test_upload_over_size_limit_rejected(client, seed_tenant, storage, count_jobs, monkeypatch):
    await seed_tenant()
    monkeypatch.setattr(settings, "max_upload_bytes", 8)

    too_big = await client.post(
        "/api/v1/jobs/upload",
        data={"tenant_id": "tnt_active"},
        files={"file": ("big.png", b"123456789", "image/png")},
    )

    assert too_big.status_code == 400
    error = too_big.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"] == {"max_upload_bytes": 8}
    assert await count_jobs() == 0
    assert not storage.root.exists() or not any(storage.root.rglob("*.png"))

    at_limit = await client.post(
        "/api/v1/jobs/upload",
        data={"tenant_id": "tnt_active"},
        files={"file": ("ok.png", b"12345678", "image/png")},
    )
    assert at_limit.status_code == 202


@pytest.mark.asyncio
async def test_upload_denied_stores_nothing(client, seed_tenant, storage):
    await seed_tenant("tnt_lapsed", billing_status="canceled")

    response = await client.post(
        "/api/v1/jobs/upload",
        data={"tenant_id": "tnt_lapsed"},
        files={"file": ("fox.png", b"bytes", "image/png")},
    )

    assert response.status_code == 403
    assert not storage.root.exists() or not any(storage.root.rglob("*.png"))


@pytest.mark.asyncio
async def test_upload_for_existing_job(client, seed_tenant):
    await seed_tenant()
    parent_id = (await _submit(client)).json()["job_id"]

    response = await client.post(
        f"/api/v1/jobs/{parent_id}/upload",
        data={"tenant_id": "tnt_active"},
        files={"file": ("ref.png", b"reference", "image/png")},
    )

    assert response.status_code == 202
    child = (await client.get(f"/api/v1/jobs/{response.json()['job_id']}")).json()
    assert child["parent_job_id"] == parent_id


@pytest.mark.asyncio
async def test_upload_for_other_tenants_job_404(client, seed_tenant):
    await seed_tenant("tnt_a")
    await seed_tenant("tnt_b")
    parent_id = (await _submit(client, tenant_id="tnt_a")).json()["job_id"]

    response = await client.post(
        f"/api/v1/jobs/{parent_id}/upload",
        data={"tenant_id": "tnt_b"},
        files={"file": ("ref.png", b"reference", "image/png")},
    )
    assert response.status_code == 404

    missing = await client.post(
        "/api/v1/jobs/job_missing/upload",
        data={"tenant_id": "tnt_a"},
        files={"file": ("ref.png", b"reference", "image/png")},
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_end_to_end_completed_result(client, seed_tenant, queue, handler_context):
    await seed_tenant()
    job_id = (await _submit(client)).json()["job_id"]

    worker = Worker("worker-e2e", queue, handler_context)
    assert await worker.execute(await queue.dequeue("worker-e2e")) == JobState.COMPLETED

    data = (await client.get(f"/api/v1/jobs/{job_id}")).json()
    assert data["state"] == "completed"
    assert data["result"]["image_url"].startswith("/uploads/tnt_active/")
    assert "error" not in data


@pytest.mark.asyncio
async def test_end_to_end_upload_postprocess(client, seed_tenant, queue, handler_context):
    await seed_tenant()
    content = b"uploaded document"
    body = (await client.post(
        "/api/v1/jobs/upload",
        data={"tenant_id": "tnt_active"},
        files={"file": ("doc.txt", content, "text/plain")},
    )).json()

    worker = Worker("worker-e2e", queue, handler_context)
    assert await worker.execute(await queue.dequeue("worker-e2e")) == JobState.COMPLETED

    result = (await client.get(f"/api/v1/jobs/{body['job_id']}")).json()["result"]
    assert result["size"] == len(content)
    assert result["sha256"] == hashlib.sha256(content).hexdigest()
    assert result["mime_type"] == "text/plain"


@pytest.mark.asyncio
async def test_submission_rate_limited(client, seed_tenant, monkeypatch):
    await seed_tenant()
    monkeypatch.setattr(settings, "rate_limit_submissions_per_minute", 2)

    statuses = [(await _submit(client)).status_code for _ in range(3)]

    assert statuses == [202, 202, 429]
