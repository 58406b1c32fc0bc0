"""Prompt search endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.dependencies import get_db
from atelier.models.prompt import PromptSearchRequest, PromptSearchResponse
from atelier.services.prompt_search import search_prompts

router = APIRouter(tags=["Prompts"])


@router.post("/prompts/search")
async def search_prompt_history(
    body: PromptSearchRequest,
    db: AsyncSession = Depends(get_db),
) -> PromptSearchResponse:
    return await search_prompts(db, body.tenant_id, body.query, body.limit)
