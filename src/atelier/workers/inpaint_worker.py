"""Handler for inpainting (masked image edit) jobs."""

import logging

from atelier.db.models.job import JobRow
from atelier.models.job import InpaintPayload
from atelier.workers.base import BaseJobHandler, HandlerContext

logger = logging.getLogger(__name__)


class InpaintImageHandler(BaseJobHandler):
    async def process(self, job: JobRow, context: HandlerContext) -> dict:
        payload = self.parse_payload(InpaintPayload, job.payload)

        source = await context.load_asset(payload.image_url, job.tenant_id)
        mask = await context.load_asset(payload.mask_url, job.tenant_id) if payload.mask_url else None

        edited = await context.ai_provider.edit_image(source, payload.prompt, payload.size, mask)
        image_url = await context.storage.store(edited, job.tenant_id, f"{job.job_id}.png")

        logger.info("Inpainted image for job %s", job.job_id)
        return {"image_url": image_url, "source_url": payload.image_url, "prompt": payload.prompt}
