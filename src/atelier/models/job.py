"""Pydantic models for job submission, status and per-kind payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from atelier.models.enums import JobKind, JobState


class JobSubmitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant_id: str = Field(..., min_length=1, max_length=128)
    kind: JobKind
    payload: dict[str, Any] = Field(default_factory=dict)


class JobAcceptedResponse(BaseModel):
    job_id: str
    state: JobState = JobState.QUEUED


class UploadAcceptedResponse(BaseModel):
    job_id: str
    state: JobState = JobState.QUEUED
    asset_url: str
    describe_job_id: str | None = None


class JobError(BaseModel):
    """Structured failure reason stored on a failed or retried job."""

    code: str
    message: str
    retryable: bool
    attempt: int
    timestamp: datetime


class JobStatusModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str = Field(..., pattern=r"^job_[A-Za-z0-9_-]+$")
    tenant_id: str
    kind: JobKind
    state: JobState
    attempts: int = 0
    parent_job_id: str | None = None
    result: dict[str, Any] | None = None
    error: JobError | None = None
    created_at: datetime
    updated_at: datetime


# Handler payloads. Validated by the worker, not at submission: the payload
# is opaque to the queue and a malformed one fails the job permanently.


class GeneratePayload(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
    size: str = "1024x1024"
    model: str | None = None


class InpaintPayload(BaseModel):
    image_url: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1, max_length=4000)
    mask_url: str | None = None
    size: str = "1024x1024"


class DescribePayload(BaseModel):
    image_url: str = Field(..., min_length=1)
    detail: str = "auto"


class UploadPostprocessPayload(BaseModel):
    asset_url: str = Field(..., min_length=1)
    file_name: str
    mime_type: str = "application/octet-stream"
    size: int = Field(..., ge=0)
    sha256: str | None = None
