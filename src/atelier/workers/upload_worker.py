"""Handler for post-processing uploaded assets."""

import logging

from atelier.db.models.job import JobRow
from atelier.errors.exceptions import PermanentExecutionError
from atelier.integrations.storage import sha256_hex
from atelier.models.job import UploadPostprocessPayload
from atelier.workers.base import BaseJobHandler, HandlerContext

logger = logging.getLogger(__name__)


class UploadPostprocessHandler(BaseJobHandler):
    """Confirm the stored asset is intact and return its normalized metadata."""

    async def process(self, job: JobRow, context: HandlerContext) -> dict:
        payload = self.parse_payload(UploadPostprocessPayload, job.payload)

        data = await context.load_asset(payload.asset_url, job.tenant_id)
        digest = sha256_hex(data)
        if payload.sha256 and payload.sha256 != digest:
            raise PermanentExecutionError(
                f"Checksum mismatch for {payload.asset_url}", "CHECKSUM_MISMATCH",
            )
        if len(data) != payload.size:
            raise PermanentExecutionError(
                f"Size mismatch for {payload.asset_url}: expected {payload.size}, got {len(data)}",
                "SIZE_MISMATCH",
            )

        logger.info("Post-processed upload %s for job %s", payload.file_name, job.job_id)
        return {
            "asset_url": payload.asset_url,
            "file_name": payload.file_name,
            "mime_type": payload.mime_type,
            "size": len(data),
            "sha256": digest,
            "parent_job_id": job.parent_job_id,
        }
