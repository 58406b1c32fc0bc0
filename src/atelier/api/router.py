"""Master API router mounted at /api/v1."""

from fastapi import APIRouter

from atelier.api.routes import health, jobs, prompts, webhooks

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(jobs.router)
api_router.include_router(prompts.router)
api_router.include_router(webhooks.router)
