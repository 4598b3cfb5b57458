"""
Memory deduplicator.

Two stages: a vector pre-filter within the candidate's category, then an
LLM arbitration (create / merge / skip) over the closest hits. Every
failure path resolves to ``create``: a missed dedup costs a row, a wrong
skip loses information.
"""

from typing import Any, List, Protocol

from loguru import logger

from db.memory_store import MemoryStore, SearchHit
from memory_types import CandidateMemory, DedupDecision, DedupPath, DedupResult
from prompts import build_dedup_prompt

SIMILARITY_THRESHOLD = 0.7
PREFILTER_LIMIT = 5
MAX_SIMILAR_FOR_PROMPT = 3
NO_SIMILAR_REASON = "no similar memories found"


class JsonCompleter(Protocol):
    async def complete_json(self, prompt: str) -> Any: ...


def format_similar_memories(hits: List[SearchHit]) -> str:
    lines = []
    for idx, hit in enumerate(hits, start=1):
        record = hit.record
        lines.append(
            f"{idx}. [{record.category.value}] {record.abstract}\n"
            f"   Overview: {record.overview}\n"
            f"   Score: {hit.score:.3f}"
        )
    return "\n".join(lines)


def _resolve_match_index(raw_index: Any, shortlist: List[SearchHit]) -> SearchHit:
    """1-based index into the shortlist; anything unusable means the top hit."""
    if isinstance(raw_index, bool):
        return shortlist[0]
    if isinstance(raw_index, float) and raw_index.is_integer():
        raw_index = int(raw_index)
    if isinstance(raw_index, int) and 1 <= raw_index <= len(shortlist):
        return shortlist[raw_index - 1]
    return shortlist[0]


class MemoryDeduplicator:
    def __init__(self, store: MemoryStore, llm: JsonCompleter) -> None:
        self._store = store
        self._llm = llm

    async def deduplicate(
        self, candidate: CandidateMemory, candidate_vector: List[float]
    ) -> DedupResult:
        similar = await self._store.search(
            candidate_vector,
            PREFILTER_LIMIT,
            SIMILARITY_THRESHOLD,
            candidate.category,
            decay=False,
        )
        if not similar:
            return DedupResult.defaulted(NO_SIMILAR_REASON)
        return await self._llm_decision(candidate, similar)

    async def _llm_decision(
        self, candidate: CandidateMemory, similar: List[SearchHit]
    ) -> DedupResult:
        shortlist = similar[:MAX_SIMILAR_FOR_PROMPT]
        prompt = build_dedup_prompt(
            candidate.abstract,
            candidate.overview,
            candidate.content,
            format_similar_memories(shortlist),
        )

        try:
            data = await self._llm.complete_json(prompt)
        except Exception as exc:
            logger.warning(f"epro-memory: dedup arbitration failed: {exc}")
            return DedupResult.defaulted(f"arbitration failed: {exc}")

        if not isinstance(data, dict):
            logger.warning(
                "epro-memory: dedup arbitration returned unparseable response, defaulting to create"
            )
            return DedupResult.defaulted("arbitration response unparseable")

        raw_decision = data.get("decision")
        try:
            decision = DedupDecision(str(raw_decision).strip().lower())
        except ValueError:
            logger.warning(
                f"epro-memory: dedup arbitration returned unknown decision {raw_decision!r}, "
                "defaulting to create"
            )
            return DedupResult.defaulted(f"unknown decision: {raw_decision}")

        reason = str(data.get("reason") or "")
        if decision is not DedupDecision.MERGE:
            return DedupResult(decision=decision, reason=reason, path=DedupPath.ARBITRATED)

        target = _resolve_match_index(data.get("match_index"), shortlist)
        return DedupResult(
            decision=decision,
            reason=reason,
            path=DedupPath.ARBITRATED,
            match_id=target.record.id,
        )
