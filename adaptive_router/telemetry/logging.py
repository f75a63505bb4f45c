"""Structured logging configuration.

Configures structlog with JSON output in production and a console
renderer in development. Per-request context (request id, user, agent
type) is carried through ``structlog.contextvars`` so background work
spawned from a request keeps the same correlation fields.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "adaptive_router.pipeline",
        "event": "pipeline.route_completed",
        "request_id": "req_789...",
        "user_id": "a1b2c3d4",
        "agent_type": "codegen",
        "cache_hit": "fuzzy"
    }
"""

from __future__ import annotations

import logging
import sys
import uuid

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.RichTracebackFormatter(),
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def short_user_id(user_id: str | None) -> str:
    """Truncate a user id for log output."""
    if not user_id:
        return "anonymous"
    return user_id[:8]


def bind_request_context(request_id: str | None = None) -> str:
    """Start a fresh log context for one routed request.

    Returns:
        The bound request id (generated when not supplied)
    """
    rid = request_id or f"req_{uuid.uuid4().hex[:16]}"
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid)
    return rid


def bind_user_context(user_id: str | None) -> None:
    """Bind a truncated user ID to log context for this request."""
    structlog.contextvars.bind_contextvars(user_id=short_user_id(user_id))


def bind_agent_context(agent_type: str, session_id: str | None = None) -> None:
    """Bind agent context to logs for this execution."""
    structlog.contextvars.bind_contextvars(agent_type=agent_type)
    if session_id:
        structlog.contextvars.bind_contextvars(session_id=session_id)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
