"""Adaptive inference routing, caching and retrieval.

Entry point for agent orchestrators:

    pipeline = create_pipeline(get_settings(), session_factory=get_session_factory())
    result = await pipeline.route("codegen", "create a login form", user_id=user_id)
"""

from adaptive_router.pipeline import CacheHit, RouteResult, RoutingPipeline, create_pipeline

__all__ = ["CacheHit", "RouteResult", "RoutingPipeline", "create_pipeline"]
