"""Telemetry package for observability.

This package contains structured logging setup and per-request context
binding helpers.
"""

from __future__ import annotations

from adaptive_router.telemetry.logging import (
    bind_agent_context,
    bind_request_context,
    bind_user_context,
    clear_context,
    configure_logging,
    short_user_id,
)

__all__ = [
    "bind_agent_context",
    "bind_request_context",
    "bind_user_context",
    "clear_context",
    "configure_logging",
    "short_user_id",
]
