"""Handler for image description jobs."""

from atelier.db.models.job import JobRow
from atelier.models.job import DescribePayload
from atelier.workers.base import BaseJobHandler, HandlerContext


class DescribeImageHandler(BaseJobHandler):
    async def process(self, job: JobRow, context: HandlerContext) -> dict:
        payload = self.parse_payload(DescribePayload, job.payload)
        image_ref = await context.public_image_ref(payload.image_url, job.tenant_id)
        description = await context.ai_provider.describe_image(image_ref, payload.detail)
        return {"image_url": payload.image_url, "description": description}
