"""Request caching layers.

Public API:
    ResponseCache   - Exact and token-overlap cache of model responses
    SemanticCache   - Embedding-similarity index linked to ResponseCache
    PromptCache     - System prompts with a compressed free-tier variant
    Prefetcher      - Follow-up prediction and pending slot reservation

All caches are process-local and rebuilt empty on restart.
"""

from adaptive_router.cache.prefetch import Prefetcher
from adaptive_router.cache.prompt_cache import PromptCache, compress_prompt
from adaptive_router.cache.response_cache import CacheStatus, ResponseCache, jaccard_similarity
from adaptive_router.cache.semantic_cache import CacheMatch, MatchLayer, SemanticCache

__all__ = [
    "CacheMatch",
    "CacheStatus",
    "MatchLayer",
    "Prefetcher",
    "PromptCache",
    "ResponseCache",
    "SemanticCache",
    "compress_prompt",
    "jaccard_similarity",
]
