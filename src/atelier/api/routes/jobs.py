"""Job submission, upload and status polling endpoints."""

import logging

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.api.middleware.rate_limit import limiter, submission_limit
from atelier.config import settings
from atelier.dependencies import Queue, Storage, get_db
from atelier.errors.exceptions import AdmissionDenied, NotFoundError, ValidationError
from atelier.integrations.storage import ObjectStore, sha256_hex
from atelier.models.enums import JobKind
from atelier.models.job import (
    JobAcceptedResponse,
    JobStatusModel,
    JobSubmitRequest,
    UploadAcceptedResponse,
)
from atelier.repositories.job_repo import JobRepository
from atelier.services.job_status import get_status
from atelier.workers.queue import JobQueue

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Jobs"])


@router.post("/jobs", status_code=202)
@limiter.limit(submission_limit)
async def submit_job(request: Request, body: JobSubmitRequest, queue: Queue) -> JobAcceptedResponse:
    job_id = await queue.submit(body.tenant_id, body.kind, body.payload)
    return JobAcceptedResponse(job_id=job_id)


@router.get("/jobs/{job_id}", response_model_exclude_none=True)
async def get_job_status(
    job_id: str,
    db: AsyncSession = Depends(get_db),
) -> JobStatusModel:
    return await get_status(db, job_id)


@router.post("/jobs/upload", status_code=202)
@limiter.limit(submission_limit)
async def upload_asset(
    request: Request,
    queue: Queue,
    storage: Storage,
    tenant_id: str = Form(..., min_length=1, max_length=128),
    file: UploadFile = File(...),
    auto_describe: bool = Form(False),
    db: AsyncSession = Depends(get_db),
) -> UploadAcceptedResponse:
    return await _accept_upload(queue, storage, db, tenant_id, file, auto_describe)


@router.post("/jobs/{job_id}/upload", status_code=202)
@limiter.limit(submission_limit)
async def upload_asset_for_job(
    request: Request,
    job_id: str,
    queue: Queue,
    storage: Storage,
    tenant_id: str = Form(..., min_length=1, max_length=128),
    file: UploadFile = File(...),
    auto_describe: bool = Form(False),
    db: AsyncSession = Depends(get_db),
) -> UploadAcceptedResponse:
    parent = await JobRepository(db).get(job_id)
    # A job owned by another tenant is reported as missing
    if parent is None or parent.tenant_id != tenant_id:
        raise NotFoundError("Job", job_id)
    return await _accept_upload(queue, storage, db, tenant_id, file, auto_describe, parent_job_id=job_id)


async def _accept_upload(
    queue: JobQueue,
    storage: ObjectStore,
    db: AsyncSession,
    tenant_id: str,
    file: UploadFile,
    auto_describe: bool,
    parent_job_id: str | None = None,
) -> UploadAcceptedResponse:
    # Refuse before touching storage; submit() re-checks inside its own transaction
    decision = await queue.admission.check(db, tenant_id, JobKind.UPLOAD_POSTPROCESS)
    await db.rollback()
    if not decision.allowed:
        raise AdmissionDenied(str(decision.reason))

    limit = settings.max_upload_bytes
    data = await file.read(limit + 1)
    if not data:
        raise ValidationError("Uploaded file is empty")
    if len(data) > limit:
        raise ValidationError(
            f"Uploaded file exceeds the {limit} byte limit", details={"max_upload_bytes": limit},
        )

    file_name = file.filename or "upload.bin"
    mime_type = file.content_type or "application/octet-stream"
    asset_url = await storage.store(data, tenant_id, file_name)

    job_id = await queue.submit(
        tenant_id,
        JobKind.UPLOAD_POSTPROCESS,
        {
            "asset_url": asset_url,
            "file_name": file_name,
            "mime_type": mime_type,
            "size": len(data),
            "sha256": sha256_hex(data),
        },
        parent_job_id=parent_job_id,
    )

    describe_job_id = None
    if auto_describe and mime_type.startswith("image/"):
        try:
            describe_job_id = await queue.submit(
                tenant_id,
                JobKind.DESCRIBE,
                {"image_url": asset_url},
                parent_job_id=job_id,
            )
        except AdmissionDenied as exc:
            logger.info("Auto-describe skipped for %s: %s", asset_url, exc.reason)

    return UploadAcceptedResponse(job_id=job_id, asset_url=asset_url, describe_job_id=describe_job_id)
