"""FastAPI exception handlers producing the standard ErrorResponse envelope."""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from atelier.errors.exceptions import AdmissionDenied, AtelierError, InvalidTransition
from atelier.models.common import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all custom exception handlers on the FastAPI app."""

    @app.exception_handler(AtelierError)
    async def atelier_error_handler(request: Request, exc: AtelierError):
        trace_id = getattr(request.state, "trace_id", "unknown")
        if isinstance(exc, InvalidTransition):
            logger.error(
                "job_invariant_violation",
                extra={
                    "path": request.url.path,
                    "trace_id": trace_id,
                    "job_id": exc.job_id,
                    "reason": exc.message,
                },
            )
        elif isinstance(exc, AdmissionDenied):
            logger.info(
                "admission_denied",
                extra={"path": request.url.path, "trace_id": trace_id, "reason": exc.reason},
            )
        error_response = ErrorResponse(
            schema_version="1.0",
            error=ErrorDetail(
                code=exc.code,
                message=exc.message,
                details=exc.details,
                trace_id=trace_id,
                timestamp=datetime.now(timezone.utc),
            ),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response.model_dump(mode="json", exclude_none=True),
        )
