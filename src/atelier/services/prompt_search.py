"""Search a tenant's earlier prompts so they can be reused.

Candidates are the tenant's most recent completed image jobs. Each prompt is
scored by the share of query terms it contains; ties go to the newer job.
"""

import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession

from atelier.db.models.job import JobRow
from atelier.models.enums import JobKind
from atelier.models.prompt import PromptMatch, PromptSearchResponse
from atelier.repositories.job_repo import JobRepository

logger = logging.getLogger(__name__)

PROMPT_KINDS = [str(JobKind.GENERATE), str(JobKind.INPAINT)]

_TERM = re.compile(r"\w+")


def prompt_terms(text: str) -> set[str]:
    return {term.lower() for term in _TERM.findall(text)}


def _prompt_of(job: JobRow) -> str | None:
    for source in (job.result, job.payload):
        if isinstance(source, dict) and isinstance(source.get("prompt"), str):
            return source["prompt"]
    return None


async def search_prompts(
    session: AsyncSession,
    tenant_id: str,
    query: str,
    limit: int = 5,
    scan_limit: int = 500,
) -> PromptSearchResponse:
    """Return up to ``limit`` of the tenant's prompts that best match ``query``."""
    wanted = prompt_terms(query)
    if not wanted:
        return PromptSearchResponse(query=query, results=[])

    jobs = await JobRepository(session).recent_completed(tenant_id, PROMPT_KINDS, scan_limit)
    matches: list[PromptMatch] = []
    seen: set[str] = set()
    for job in jobs:
        prompt = _prompt_of(job)
        if prompt is None or prompt.lower() in seen:
            continue
        score = len(wanted & prompt_terms(prompt)) / len(wanted)
        if score == 0:
            continue
        seen.add(prompt.lower())
        matches.append(PromptMatch(
            job_id=job.job_id,
            kind=job.kind,
            prompt=prompt,
            score=round(score, 4),
            image_url=(job.result or {}).get("image_url"),
            created_at=job.created_at,
        ))

    # Stable sort keeps newest-first order among equal scores
    matches.sort(key=lambda m: m.score, reverse=True)
    logger.info(
        "Prompt search for tenant %s scanned %d jobs, %d matches", tenant_id, len(jobs), len(matches),
    )
    return PromptSearchResponse(query=query, results=matches[:limit])
