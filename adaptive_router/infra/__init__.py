"""
Infrastructure components for detached background processing.
"""

from __future__ import annotations

from adaptive_router.infra.background import BackgroundJob, BackgroundTaskRunner, TaskStatus

__all__ = [
    "BackgroundJob",
    "BackgroundTaskRunner",
    "TaskStatus",
]
