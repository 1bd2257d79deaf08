"""Structured logging configuration.

Log lines carry the request ID, and when known the consumer and session
they concern, so a claim or checkpoint can be traced across API calls and
maintenance jobs. Caller documents (task payloads, snapshots, state values)
are redacted and truncated before they reach a log line.
"""

import asyncio
import functools
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

import structlog

from agentsync import __version__
from agentsync.core.config import settings

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
consumer_id_var: ContextVar[Optional[str]] = ContextVar("consumer_id", default=None)
session_key_var: ContextVar[Optional[str]] = ContextVar("session_key", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "consumer_id": consumer_id_var,
    "session_key": session_key_var,
}


# =============================================================================
# Redaction
# =============================================================================

SENSITIVE_KEYS = {
    "password", "secret", "token", "credential", "auth",
    "api_key", "apikey", "access_token", "refresh_token", "jwt",
    "authorization", "cookie",
}

SENSITIVE_PATTERNS = ("sk-", "Bearer ")

MAX_DEPTH = 10
MAX_STRING_LENGTH = 500


def redact_sensitive(data: Any, depth: int = 0) -> Any:
    """Recursively redact secrets and clip long strings in a log value."""
    if depth > MAX_DEPTH:
        return "[MAX_DEPTH]"

    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if _is_sensitive_key(k) else redact_sensitive(v, depth + 1)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, depth + 1) for item in data]
    if isinstance(data, str):
        return _redact_string(data)
    return data


def _is_sensitive_key(key: Any) -> bool:
    key_lower = str(key).lower()
    return any(sensitive in key_lower for sensitive in SENSITIVE_KEYS)


def _redact_string(value: str) -> str:
    if any(pattern in value for pattern in SENSITIVE_PATTERNS):
        return "[REDACTED]"
    if len(value) > MAX_STRING_LENGTH:
        return f"{value[:MAX_STRING_LENGTH]}...[{len(value) - MAX_STRING_LENGTH} more chars]"
    return value


# =============================================================================
# Structlog Processors
# =============================================================================

def add_request_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Copy request, consumer and session context onto the entry.

    Values passed explicitly to the log call win over the context.
    """
    for field, var in _CONTEXT_VARS.items():
        value = var.get()
        if value and field not in event_dict:
            event_dict[field] = value
    return event_dict


def redact_processor(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    if settings.redact_sensitive_data:
        return redact_sensitive(event_dict)
    return event_dict


def add_service_info(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    event_dict["service"] = "agentsync"
    event_dict["version"] = __version__
    return event_dict


# =============================================================================
# Logger Configuration
# =============================================================================

def configure_logging() -> None:
    """Configure structlog for JSON (production) or console (development) output."""
    level = getattr(logging, settings.log_level.upper())

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_request_context,
            add_service_info,
            redact_processor,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    # SQL echo is controlled by DB_ECHO, not the log level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(max(level, logging.INFO))


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bound_context(consumer_id: Optional[str] = None, session_key: Optional[str] = None) -> Iterator[None]:
    """Attach a consumer and/or session to every log line inside the block."""
    tokens = []
    if consumer_id:
        tokens.append((consumer_id_var, consumer_id_var.set(consumer_id)))
    if session_key:
        tokens.append((session_key_var, session_key_var.set(session_key)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


# =============================================================================
# Request ID Middleware
# =============================================================================

class RequestIDMiddleware:
    """ASGI middleware that tags each request with an ID.

    An incoming ``X-Request-ID`` header is reused; otherwise one is generated.
    The ID is echoed back on the response.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = headers.get(b"x-request-id", b"").decode() or str(uuid.uuid4())
        token = request_id_var.set(request_id)

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                message["headers"] = list(message.get("headers", [])) + [
                    (b"x-request-id", request_id.encode())
                ]
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(token)


# =============================================================================
# Logging Decorators
# =============================================================================

def log_execution(func):
    """Log start, completion (with duration) and failure of a function."""
    logger = get_logger(func.__module__)

    def _finished(start: float, error: Optional[Exception] = None) -> None:
        duration_ms = round((time.time() - start) * 1000, 2)
        if error is None:
            logger.info("function_completed", function=func.__name__, duration_ms=duration_ms)
        else:
            logger.error(
                "function_failed",
                function=func.__name__,
                duration_ms=duration_ms,
                error=str(error),
                exc_info=True,
            )

    if asyncio.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.time()
            logger.info("function_started", function=func.__name__)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _finished(start, e)
                raise
            _finished(start)
            return result

        return async_wrapper

    @functools.wraps(func)
    def sync_wrapper(*args, **kwargs):
        start = time.time()
        logger.info("function_started", function=func.__name__)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _finished(start, e)
            raise
        _finished(start)
        return result

    return sync_wrapper
