"""Handler registry mapping job kinds to handler classes."""

from atelier.models.enums import JobKind
from atelier.workers.base import BaseJobHandler

_registry: dict[str, type[BaseJobHandler]] = {}


def _load_handlers() -> dict[str, type[BaseJobHandler]]:
    from atelier.workers.describe_worker import DescribeImageHandler
    from atelier.workers.generate_worker import GenerateImageHandler
    from atelier.workers.inpaint_worker import InpaintImageHandler
    from atelier.workers.upload_worker import UploadPostprocessHandler

    return {
        JobKind.GENERATE: GenerateImageHandler,
        JobKind.INPAINT: InpaintImageHandler,
        JobKind.DESCRIBE: DescribeImageHandler,
        JobKind.UPLOAD_POSTPROCESS: UploadPostprocessHandler,
    }


def get_handler(kind: str) -> BaseJobHandler | None:
    """Get a handler instance for a job kind, or None if the kind is unknown."""
    if not _registry:
        _registry.update(_load_handlers())
    cls = _registry.get(kind)
    return cls() if cls else None
