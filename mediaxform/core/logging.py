"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in ELK or CloudWatch.
Every log includes: message_id, fingerprint, stage, version and timestamp
when they are known for the current transform.
"""

import sys
import asyncio
import logging
import structlog
from functools import wraps
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variables for message-scoped logging
message_id_var: ContextVar[Optional[str]] = ContextVar("message_id", default=None)
fingerprint_var: ContextVar[Optional[str]] = ContextVar("fingerprint", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

# Application version
APP_VERSION = "1.0.0"


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = APP_VERSION

    message_id = message_id_var.get()
    if message_id:
        event_dict.setdefault("message_id", message_id)

    fingerprint = fingerprint_var.get()
    if fingerprint:
        event_dict.setdefault("fingerprint", fingerprint)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(message_id="abc123") as ctx:
            ctx.set_fingerprint(fp)
            ctx.set_stage("cache_checked")
            logger.info("transform_cache_miss")
    """

    def __init__(
        self,
        message_id: Optional[str] = None,
        fingerprint: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        self.message_id = message_id
        self.fingerprint = fingerprint
        self.stage = stage
        self._tokens = []

    def __enter__(self):
        if self.message_id:
            self._tokens.append((message_id_var, message_id_var.set(self.message_id)))
        if self.fingerprint:
            self._tokens.append((fingerprint_var, fingerprint_var.set(self.fingerprint)))
        if self.stage:
            self._tokens.append((stage_var, stage_var.set(self.stage)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False

    def set_stage(self, stage: str):
        """Update the current stage."""
        self._tokens.append((stage_var, stage_var.set(stage)))

    def set_fingerprint(self, fingerprint: str):
        """Attach the transform fingerprint once it is known."""
        self._tokens.append((fingerprint_var, fingerprint_var.set(fingerprint)))


def with_logging(stage: str):
    """
    Decorator to wrap a coroutine or function with stage logging.

    Usage:
        @with_logging("source_loaded")
        async def load_source(self, obj) -> bytes:
            ...
    """
    def decorator(func):
        def _finish(logger, start: datetime, error: Optional[Exception] = None):
            duration_ms = int((datetime.now(timezone.utc) - start).total_seconds() * 1000)
            if error is None:
                logger.info("stage_completed", stage=stage, duration_ms=duration_ms)
            else:
                logger.error(
                    "stage_failed",
                    stage=stage,
                    duration_ms=duration_ms,
                    error=str(error),
                    error_type=type(error).__name__
                )

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            token = stage_var.set(stage)
            start = datetime.now(timezone.utc)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _finish(logger, start, e)
                raise
            else:
                _finish(logger, start)
                return result
            finally:
                stage_var.reset(token)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            token = stage_var.set(stage)
            start = datetime.now(timezone.utc)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _finish(logger, start, e)
                raise
            else:
                _finish(logger, start)
                return result
            finally:
                stage_var.reset(token)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


# Example log output structure:
# {
#   "timestamp": "2026-05-20T10:00:00+00:00",
#   "level": "info",
#   "event": "transform_completed",
#   "stage": "cache_written",
#   "message_id": "550e8400-e29b-41d4-a716-446655440000",
#   "fingerprint": "9f2c...",
#   "version": "1.0.0",
#   "duration_ms": 420
# }
