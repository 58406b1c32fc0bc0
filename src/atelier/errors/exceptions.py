"""Custom exception classes for the Atelier job pipeline."""


class AtelierError(Exception):
    """Base exception for errors that surface to HTTP callers."""

    def __init__(self, code: str, message: str, details=None, status_code: int = 500):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code
        super().__init__(message)


class ValidationError(AtelierError):
    """Request validation failure."""

    def __init__(self, message: str, details=None):
        super().__init__("VALIDATION_ERROR", message, details, status_code=400)


class NotFoundError(AtelierError):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            "NOT_FOUND",
            f"{resource} '{resource_id}' not found",
            status_code=404,
        )


class AdmissionDenied(AtelierError):
    """Tenant may not enqueue new work (billing or quota state)."""

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(
            "ADMISSION_DENIED",
            message or f"Job submission denied: {reason}",
            details={"reason": reason},
            status_code=403,
        )


class InvalidTransition(AtelierError):
    """A job state change was requested that the current state does not allow."""

    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        super().__init__(
            "INVALID_TRANSITION",
            message,
            details={"job_id": job_id},
            status_code=409,
        )


class SignatureVerificationFailed(AtelierError):
    """Webhook signature missing or invalid."""

    def __init__(self, message: str = "Webhook signature verification failed"):
        super().__init__("SIGNATURE_VERIFICATION_FAILED", message, status_code=400)


class ExecutionError(Exception):
    """Base for failures raised by job handlers. Never surfaced over HTTP."""

    retryable: bool = False

    def __init__(self, message: str, code: str = "EXECUTION_ERROR"):
        self.code = code
        self.message = message
        super().__init__(message)


class TransientExecutionError(ExecutionError):
    """Infrastructure failure (timeout, rate limit). Retried up to max_attempts."""

    retryable = True

    def __init__(self, message: str, code: str = "TRANSIENT_ERROR"):
        super().__init__(message, code)


class PermanentExecutionError(ExecutionError):
    """Malformed payload or policy rejection. The job fails without retry."""

    retryable = False

    def __init__(self, message: str, code: str = "PERMANENT_ERROR"):
        super().__init__(message, code)
