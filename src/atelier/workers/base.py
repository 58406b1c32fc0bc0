"""Base handler interface for job kinds."""

import base64
import logging
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TypeVar

import pydantic

from atelier.db.models.job import JobRow
from atelier.errors.exceptions import PermanentExecutionError, TransientExecutionError
from atelier.integrations.ai_provider import AIProvider
from atelier.integrations.storage import ObjectStore, tenant_segment

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=pydantic.BaseModel)


@dataclass
class HandlerContext:
    """Collaborators a handler may use. Shared by all jobs of one worker process."""

    storage: ObjectStore
    ai_provider: AIProvider
    storage_base_url: str = "/uploads"

    def is_stored(self, url: str) -> bool:
        return url.startswith(self.storage_base_url.rstrip("/") + "/")

    def check_owner(self, url: str, tenant_id: str) -> None:
        """Raise unless the stored asset at ``url`` lives under ``tenant_id``."""
        relative = posixpath.normpath(url[len(self.storage_base_url.rstrip("/")) + 1:])
        owner = relative.split("/", 1)[0]
        if owner != tenant_segment(tenant_id):
            raise PermanentExecutionError(
                f"Asset {url} does not belong to tenant {tenant_id}", "ASSET_FORBIDDEN",
            )

    async def load_asset(self, url: str, tenant_id: str) -> bytes:
        """Read an asset from the object store or, for external URLs, over HTTP.

        Stored assets are only readable by the tenant that owns them.
        """
        if self.is_stored(url):
            self.check_owner(url, tenant_id)
            try:
                return await self.storage.fetch(url)
            except FileNotFoundError:
                raise PermanentExecutionError(f"Asset {url} does not exist", "ASSET_MISSING")
            except OSError as exc:
                raise TransientExecutionError(f"Asset {url} unreadable: {exc}", "STORAGE_ERROR")
        return await self.ai_provider.download(url)

    async def public_image_ref(self, url: str, tenant_id: str, mime_type: str = "image/png") -> str:
        """Stored assets are not reachable by the provider, so inline them as data URLs."""
        if not self.is_stored(url):
            return url
        data = await self.load_asset(url, tenant_id)
        return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


class BaseJobHandler(ABC):
    """Abstract base class for job handlers.

    Handlers must not keep state between calls: a retried job may land on a
    different worker process.
    """

    @abstractmethod
    async def process(self, job: JobRow, context: HandlerContext) -> dict:
        """Execute the job and return its result document.

        Raises:
            TransientExecutionError: the job should be retried.
            PermanentExecutionError: the job should fail without retry.
        """
        ...

    @staticmethod
    def parse_payload(model: type[P], payload: dict) -> P:
        try:
            return model.model_validate(payload or {})
        except pydantic.ValidationError as exc:
            raise PermanentExecutionError(
                f"Malformed payload: {exc.error_count()} validation error(s)", "INVALID_PAYLOAD",
            )
