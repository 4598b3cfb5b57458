"""Query-time recall over the memory store."""

import asyncio
from collections import OrderedDict
from typing import Dict, List

from loguru import logger

from db.memory_store import MemoryStore, SearchHit
from extractor import Embedder

MIN_QUERY_CHARS = 5
RECALL_PREAMBLE = "The following agent experiences may be relevant:"


def format_recall_context(hits: List[SearchHit]) -> str:
    """Render hits as L0 abstracts grouped by category, first-seen order."""
    if not hits:
        return ""

    grouped: Dict[str, List[str]] = OrderedDict()
    for hit in hits:
        grouped.setdefault(hit.record.category.value, []).append(hit.record.abstract)

    lines = ["<agent-experience>", RECALL_PREAMBLE]
    for category, abstracts in grouped.items():
        lines.append(f"[{category}]")
        lines.extend(f"- {abstract}" for abstract in abstracts)
    lines.append("</agent-experience>")
    return "\n".join(lines)


class RecallScorer:
    def __init__(
        self,
        store: MemoryStore,
        embeddings: Embedder,
        *,
        limit: int = 5,
        min_score: float = 0.3,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self.limit = limit
        self.min_score = min_score

    async def recall(self, query: str) -> List[SearchHit]:
        """
        Search memories relevant to ``query``.

        Ranking is decay-adjusted when the store has decay enabled. Every
        returned record gets its active count bumped; a failed bump is
        logged and does not affect the result.
        """
        text = (query or "").strip()
        if len(text) < MIN_QUERY_CHARS:
            return []

        vector = await self._embeddings.embed(text)
        hits = await self._store.search(vector, self.limit, self.min_score)
        if not hits:
            return []

        outcomes = await asyncio.gather(
            *(self._store.increment_active_count(hit.record.id) for hit in hits),
            return_exceptions=True,
        )
        for hit, outcome in zip(hits, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    f"epro-memory: failed to bump active count for {hit.record.id}: {outcome}"
                )

        logger.info(f"epro-memory: recalled {len(hits)} memories")
        return hits
