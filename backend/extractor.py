"""
Memory extraction orchestrator.

Pipeline: conversation -> LLM candidates -> per-category policy ->
dedup -> persist. Candidates are processed strictly in extraction order;
one failing candidate is logged and counted as skipped, never aborting
the batch. The checkpointed variant records a cursor after every
candidate so an interrupted batch resumes where it stopped.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from loguru import logger
from pydantic import ValidationError

from checkpoint import CheckpointManager, ExtractionCheckpoint
from db.memory_store import MemoryRecord, MemoryStore
from deduplicator import JsonCompleter, MemoryDeduplicator
from errors import CapabilityError
from memory_types import (
    CandidateMemory,
    DedupDecision,
    ExtractionStats,
    MergePolicy,
)
from prompts import build_extraction_prompt, build_merge_prompt


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class AppendOnlyMergePolicy(str, Enum):
    """What to do when dedup says "merge" for an append-only category."""

    STORE_AS_NEW = "store_as_new"
    SKIP = "skip"


class CandidateOutcome(str, Enum):
    CREATED = "created"
    MERGED = "merged"
    SKIPPED = "skipped"


def _record_outcome(stats: ExtractionStats, outcome: CandidateOutcome) -> None:
    setattr(stats, outcome.value, getattr(stats, outcome.value) + 1)


def parse_candidates(data: Any) -> List[CandidateMemory]:
    """Validate the extraction reply; malformed items are dropped, order kept."""
    if not isinstance(data, dict):
        return []
    items = data.get("memories")
    if not isinstance(items, list):
        return []

    candidates: List[CandidateMemory] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            candidates.append(CandidateMemory.model_validate(item))
        except ValidationError:
            logger.debug(f"epro-memory: dropped malformed candidate: {item!r:.200}")
    return candidates


class MemoryExtractor:
    def __init__(
        self,
        store: MemoryStore,
        embeddings: Embedder,
        llm: JsonCompleter,
        deduplicator: MemoryDeduplicator,
        *,
        append_only_merge_policy: AppendOnlyMergePolicy = AppendOnlyMergePolicy.STORE_AS_NEW,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._llm = llm
        self._deduplicator = deduplicator
        self._append_only_merge_policy = append_only_merge_policy

    # =========================================================================
    # Extraction
    # =========================================================================

    async def extract_candidates(
        self, conversation_text: str, user: str
    ) -> List[CandidateMemory]:
        prompt = build_extraction_prompt(conversation_text, user)
        data = await self._llm.complete_json(prompt)
        return parse_candidates(data)

    async def _extract_or_empty(
        self, conversation_text: str, user: str
    ) -> List[CandidateMemory]:
        try:
            candidates = await self.extract_candidates(conversation_text, user)
        except CapabilityError as exc:
            logger.warning(f"epro-memory: candidate extraction failed: {exc}")
            return []
        if candidates:
            logger.info(f"epro-memory: extracted {len(candidates)} candidate memories")
        return candidates

    async def extract_and_persist(
        self, conversation_text: str, session_key: str, user: str
    ) -> ExtractionStats:
        candidates = await self._extract_or_empty(conversation_text, user)
        stats = await self._run_batch(candidates, 0, session_key)
        self._log_stats(stats)
        return stats

    # =========================================================================
    # Checkpointed extraction
    # =========================================================================

    async def extract_with_checkpoint(
        self,
        conversation_text: str,
        session_key: str,
        user: str,
        checkpoints: CheckpointManager,
    ) -> ExtractionStats:
        """
        Extract and persist, saving the cursor after every candidate.

        An unfinished checkpoint for the same session key is resumed instead
        of re-extracting from ``conversation_text``.
        """
        checkpoint = await checkpoints.load(session_key)
        if checkpoint is not None and not checkpoint.is_complete:
            logger.info(
                f"epro-memory: resuming from checkpoint: stage={checkpoint.stage.value}, "
                f"progress={checkpoint.processed_index + 1}/{len(checkpoint.candidates)}"
            )
            return await self.resume_from_checkpoint(checkpoint, checkpoints)

        candidates = await self._extract_or_empty(conversation_text, user)
        if not candidates:
            return ExtractionStats()

        checkpoint = checkpoints.create_initial(session_key, candidates, user)
        await checkpoints.save(checkpoint)
        stats = await self._run_batch(
            candidates, 0, session_key, checkpoint=checkpoint, checkpoints=checkpoints
        )
        await checkpoints.clear(session_key)
        self._log_stats(stats)
        return stats

    async def resume_from_checkpoint(
        self, checkpoint: ExtractionCheckpoint, checkpoints: CheckpointManager
    ) -> ExtractionStats:
        start_index = checkpoint.next_index
        logger.info(
            f"epro-memory: resuming {checkpoint.session_key} from index "
            f"{start_index}/{len(checkpoint.candidates)}"
        )
        stats = await self._run_batch(
            checkpoint.candidates,
            start_index,
            checkpoint.session_key,
            checkpoint=checkpoint,
            checkpoints=checkpoints,
        )
        await checkpoints.clear(checkpoint.session_key)
        self._log_stats(stats, prefix="resumed extraction complete: ")
        return stats

    async def resume_incomplete(self, checkpoints: CheckpointManager) -> List[ExtractionStats]:
        """Resume every unfinished checkpoint; one failed resume does not stop the rest."""
        results: List[ExtractionStats] = []
        for checkpoint in await checkpoints.find_incomplete():
            logger.info(
                f"epro-memory: auto-resuming incomplete extraction: {checkpoint.session_key}"
            )
            try:
                results.append(await self.resume_from_checkpoint(checkpoint, checkpoints))
            except Exception as exc:
                logger.error(
                    f"epro-memory: failed to resume extraction {checkpoint.session_key}: {exc}"
                )
        return results

    # =========================================================================
    # Batch loop
    # =========================================================================

    async def _run_batch(
        self,
        candidates: List[CandidateMemory],
        start_index: int,
        session_key: str,
        *,
        checkpoint: Optional[ExtractionCheckpoint] = None,
        checkpoints: Optional[CheckpointManager] = None,
    ) -> ExtractionStats:
        stats = ExtractionStats()
        for index in range(max(0, start_index), len(candidates)):
            candidate = candidates[index]
            try:
                outcome = await self.process_candidate(candidate, session_key)
            except Exception as exc:
                logger.warning(
                    f"epro-memory: failed to process {candidate.category.value} memory: {exc}"
                )
                outcome = CandidateOutcome.SKIPPED
            _record_outcome(stats, outcome)

            if checkpoint is not None and checkpoints is not None:
                checkpoint = checkpoints.update_progress(checkpoint, index)
                try:
                    await checkpoints.save(checkpoint)
                except OSError as exc:
                    logger.warning(
                        f"epro-memory: checkpoint save failed for {session_key} "
                        f"at index {index}: {exc}"
                    )
        return stats

    @staticmethod
    def _log_stats(stats: ExtractionStats, prefix: str = "") -> None:
        logger.info(
            f"epro-memory: {prefix}created={stats.created}, "
            f"merged={stats.merged}, skipped={stats.skipped}"
        )

    # =========================================================================
    # Per-candidate policy
    # =========================================================================

    async def process_candidate(
        self, candidate: CandidateMemory, session_key: str
    ) -> CandidateOutcome:
        policy = candidate.category.merge_policy
        if policy is MergePolicy.ALWAYS_MERGE:
            return await self._handle_always_merge(candidate, session_key)

        vector = await self._embeddings.embed(candidate.embedding_text())
        result = await self._deduplicator.deduplicate(candidate, vector)

        if result.decision is DedupDecision.SKIP:
            return CandidateOutcome.SKIPPED

        if result.decision is DedupDecision.MERGE:
            if policy is MergePolicy.MERGE_SUPPORTED and result.match_id:
                return await self._handle_merge(candidate, result.match_id, session_key, vector)
            if (
                policy is MergePolicy.APPEND_ONLY
                and self._append_only_merge_policy is AppendOnlyMergePolicy.SKIP
            ):
                return CandidateOutcome.SKIPPED

        await self._store_new(candidate, session_key, vector)
        return CandidateOutcome.CREATED

    async def _store_new(
        self,
        candidate: CandidateMemory,
        session_key: str,
        vector: Optional[List[float]] = None,
    ) -> MemoryRecord:
        if vector is None:
            vector = await self._embeddings.embed(candidate.embedding_text())
        return await self._store.store(
            category=candidate.category,
            abstract=candidate.abstract,
            overview=candidate.overview,
            content=candidate.content,
            vector=vector,
            source_session=session_key,
        )

    async def _handle_always_merge(
        self, candidate: CandidateMemory, session_key: str
    ) -> CandidateOutcome:
        existing = await self._store.find_by_category(candidate.category)
        if not existing:
            await self._store_new(candidate, session_key)
            return CandidateOutcome.CREATED
        await self._merge_into(existing[0], candidate)
        return CandidateOutcome.MERGED

    async def _handle_merge(
        self,
        candidate: CandidateMemory,
        match_id: str,
        session_key: str,
        vector: List[float],
    ) -> CandidateOutcome:
        target = await self._store.get_by_id(match_id)
        if target is None:
            # Target vanished after the dedup decision; keep the candidate.
            await self._store_new(candidate, session_key, vector)
            return CandidateOutcome.CREATED
        await self._merge_into(target, candidate)
        return CandidateOutcome.MERGED

    async def _merge_into(self, target: MemoryRecord, candidate: CandidateMemory) -> None:
        merged = await self.merge_memory(target, candidate)
        merged_vector = await self._embeddings.embed(f"{merged['abstract']} {merged['content']}")
        await self._store.update(
            target.id,
            {
                "abstract": merged["abstract"],
                "overview": merged["overview"],
                "content": merged["content"],
                "vector": merged_vector,
            },
        )

    async def merge_memory(
        self, existing: MemoryRecord, candidate: CandidateMemory
    ) -> Dict[str, str]:
        """
        Ask the LLM for unified tiers.

        Falls back to the candidate's own tiers when the reply is missing,
        malformed or the call fails, so a merge never loses new content.
        """
        prompt = build_merge_prompt(
            existing.abstract,
            existing.overview,
            existing.content,
            candidate.abstract,
            candidate.overview,
            candidate.content,
            candidate.category.value,
        )
        try:
            data = await self._llm.complete_json(prompt)
        except Exception as exc:
            logger.warning(f"epro-memory: merge arbitration failed, keeping candidate tiers: {exc}")
            data = None

        if isinstance(data, dict):
            abstract = data.get("abstract")
            content = data.get("content")
            overview = data.get("overview")
            if not isinstance(overview, str) or not overview:
                overview = candidate.overview
            if (
                isinstance(abstract, str)
                and abstract.strip()
                and isinstance(content, str)
                and content.strip()
            ):
                return {
                    "abstract": abstract,
                    "overview": overview,
                    "content": content,
                }

        return {
            "abstract": candidate.abstract,
            "overview": candidate.overview,
            "content": candidate.content,
        }
