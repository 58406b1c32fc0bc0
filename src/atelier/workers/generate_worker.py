"""Handler for image generation jobs."""

import logging

from atelier.db.models.job import JobRow
from atelier.models.job import GeneratePayload
from atelier.workers.base import BaseJobHandler, HandlerContext

logger = logging.getLogger(__name__)


class GenerateImageHandler(BaseJobHandler):
    """Generate an image from a prompt and store it for the tenant."""

    async def process(self, job: JobRow, context: HandlerContext) -> dict:
        payload = self.parse_payload(GeneratePayload, job.payload)
        model = payload.model or context.ai_provider.image_model

        image = await context.ai_provider.generate_image(payload.prompt, payload.size, model)
        image_url = await context.storage.store(image, job.tenant_id, f"{job.job_id}.png")

        logger.info("Generated image for job %s (%d bytes)", job.job_id, len(image))
        return {"image_url": image_url, "prompt": payload.prompt, "model": model, "size": payload.size}
