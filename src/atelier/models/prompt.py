"""Pydantic models for prompt search."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PromptSearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant_id: str = Field(..., min_length=1, max_length=128)
    query: str = Field(..., min_length=1, max_length=4000)
    limit: int = Field(5, ge=1, le=50)


class PromptMatch(BaseModel):
    job_id: str
    kind: str
    prompt: str
    score: float
    image_url: str | None = None
    created_at: datetime


class PromptSearchResponse(BaseModel):
    query: str
    results: list[PromptMatch]
