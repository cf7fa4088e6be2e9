"""
Global Exception Handling

Error taxonomy for the transform core, a circuit breaker for remote
collaborators, and structured JSON error responses for the API.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mediaxform.core.logging import get_logger, message_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class MediaXformError(Exception):
    """Base exception for the media transform service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(MediaXformError):
    """Raised when a media object is absent or not owned by the caller."""

    def __init__(self, message: str = "Media object not found", **kwargs):
        super().__init__(message, code=404, **kwargs)


class InvalidSpecError(MediaXformError):
    """Raised when a transform spec or upload fails structural validation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class UnsupportedFormatError(MediaXformError):
    """Raised when a target or source format is outside the allow-list."""

    def __init__(self, fmt: str, **kwargs):
        super().__init__(f"Unsupported format: {fmt}", code=415, **kwargs)
        self.details["format"] = fmt


class InvalidWatermarkSourceError(MediaXformError):
    """Raised when the watermark URL does not yield a decodable image."""

    def __init__(self, message: str, url: Optional[str] = None, **kwargs):
        super().__init__(message, code=422, **kwargs)
        if url:
            self.details["url"] = url


class TransientIOError(MediaXformError):
    """Raised when a store, queue or network call fails in a retryable way."""

    def __init__(self, message: str, service: Optional[str] = None, **kwargs):
        super().__init__(message, code=503, **kwargs)
        if service:
            self.details["service"] = service


class ConflictError(MediaXformError):
    """Raised when a write collides with a row that already exists."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=409, **kwargs)


class PipelineFailureError(MediaXformError):
    """Raised when the codec fails in a way that retrying will not fix."""

    def __init__(self, message: str, stage: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.stage = stage
        if stage:
            self.details["stage"] = stage


# Errors a worker drops without retrying; the message can never succeed.
TERMINAL_ERRORS = (
    NotFoundError,
    InvalidSpecError,
    UnsupportedFormatError,
    InvalidWatermarkSourceError,
    ConflictError,
)


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for remote collaborators.

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
        half_open_max_calls: int = 3
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
        elif state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls
        return False

    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info("circuit_breaker_closed", circuit=self.name)
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = datetime.now(timezone.utc)

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold:
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )

    def reset(self):
        """Reset the circuit breaker."""
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0


# Global circuit breakers for remote collaborators
circuit_breakers: Dict[str, CircuitBreaker] = {
    "watermark_fetch": CircuitBreaker("watermark_fetch", failure_threshold=5, recovery_timeout=60),
}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get or create a circuit breaker for a service."""
    if name not in circuit_breakers:
        circuit_breakers[name] = CircuitBreaker(name)
    return circuit_breakers[name]


# =============================================================================
# Exception Handlers
# =============================================================================

def error_payload(exc: MediaXformError) -> Dict[str, Any]:
    """Structured JSON body for a service error."""
    return {
        "error": exc.message,
        "code": exc.code,
        "details": exc.details,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(MediaXformError)
    async def media_exception_handler(request: Request, exc: MediaXformError):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "media_exception",
            error=exc.message,
            code=exc.code,
            details=exc.details,
            path=str(request.url.path)
        )
        return JSONResponse(status_code=exc.code, content=error_payload(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            message_id=message_id_var.get(),
            traceback=traceback.format_exc()
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "code": 500,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )
