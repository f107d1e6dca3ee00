"""
Global Exception Handling

Typed errors for the transformation core, a circuit breaker used to keep a
failing cache backend out of the request path, and the FastAPI handlers that
render errors as structured JSON.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class TransformBaseException(Exception):
    """Base exception for the transform service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(TransformBaseException):
    """Raised when a transformation spec or upload is malformed."""

    def __init__(self, message: str, errors: Optional[list] = None, **kwargs):
        super().__init__(message, code=400, **kwargs)
        if errors:
            self.details["errors"] = errors


class NotFoundError(TransformBaseException):
    """Raised when an image record or its source file is missing."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=404, **kwargs)


class AlreadyProcessingError(TransformBaseException):
    """Raised when a transform is requested while one is in flight for the image."""

    def __init__(self, image_id: str, **kwargs):
        super().__init__(
            f"Image {image_id} is currently being processed. Please wait.",
            code=409,
            **kwargs
        )
        self.details["image_id"] = image_id


class InvalidTransitionError(TransformBaseException):
    """Raised when a job status change would move backwards or leave a terminal state."""

    def __init__(self, job_id: str, current: Optional[str], target: str, **kwargs):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {target}",
            code=409,
            job_id=job_id,
            **kwargs
        )
        self.details["current"] = current
        self.details["target"] = target


class SourceUnreadableError(TransformBaseException):
    """Raised when the source bytes are missing, empty or cannot be decoded."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=422, **kwargs)


class ProcessingFailedError(TransformBaseException):
    """Raised when a pipeline stage fails (invalid geometry, codec error)."""

    def __init__(self, message: str, stage: Optional[str] = None, **kwargs):
        super().__init__(message, code=422, stage=stage, **kwargs)


class StorageError(TransformBaseException):
    """Raised when blob storage operations fail."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class QueueUnavailableError(TransformBaseException):
    """Raised when the message broker cannot accept a job."""

    def __init__(self, message: str = "Job queue is unavailable", **kwargs):
        super().__init__(message, code=503, **kwargs)


class CacheError(TransformBaseException):
    """Cache backend malfunction. Never surfaces to callers, always a miss."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


# Errors that will fail the same way on every attempt
PERMANENT_ERRORS = (
    ValidationError,
    NotFoundError,
    SourceUnreadableError,
    ProcessingFailedError,
)


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for graceful failure handling.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 1
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN" and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state

        if state == "CLOSED":
            return True
        if state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls
        return False

    def record_success(self):
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info("circuit_breaker_closed", circuit=self.name)
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        self._failure_count += 1
        self._last_failure_time = datetime.now(timezone.utc)

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold and self._state != "OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )

    def reset(self):
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0


# =============================================================================
# FastAPI Exception Handlers
# =============================================================================

def _error_body(
    message: str,
    code: int,
    job_id: Optional[str] = None,
    stage: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {
        "error": message,
        "job_id": job_id,
        "code": code,
        "stage": stage,
        "details": details or {},
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(TransformBaseException)
    async def transform_exception_handler(request: Request, exc: TransformBaseException):
        log = logger.error if exc.code >= 500 else logger.warning
        log(
            "transform_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            stage=exc.stage,
            path=str(request.url.path)
        )

        return JSONResponse(
            status_code=exc.code,
            content=_error_body(exc.message, exc.code, exc.job_id, exc.stage, exc.details)
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content=_error_body("Internal server error", 500, job_id_var.get())
        )
