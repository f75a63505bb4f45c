"""Citation formatting for retrieved knowledge.

Each retrieval result used in a response gets a 1-based index that is
stable within that response, rendered as ``[index] source (relevance: NN.N%)``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from adaptive_router.rag.hybrid_search import RetrievalResult

UNKNOWN_SOURCE = "Unknown source"


@dataclass(frozen=True)
class Citation:
    index: int
    source: str
    score: float
    chunk_id: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def format_inline(self) -> str:
        return f"[{self.index}]"

    def format_reference(self) -> str:
        return f"[{self.index}] {self.source} (relevance: {self.score * 100:.1f}%)"


def build_citations(results: list[RetrievalResult]) -> list[Citation]:
    """Number results in order, starting at 1."""
    return [
        Citation(
            index=i,
            source=result.source or UNKNOWN_SOURCE,
            score=result.combined_score,
            chunk_id=result.id,
        )
        for i, result in enumerate(results, start=1)
    ]
