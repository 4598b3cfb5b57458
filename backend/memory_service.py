"""
Wiring for the memory engine.

One MemoryStore is built per service and shared by reference with the
deduplicator, extractor and recall scorer, so every write goes through
the same write lane.
"""

from typing import Any, Iterable, List, Optional

from loguru import logger

from checkpoint import CheckpointManager
from db.memory_store import MemoryStore, SearchHit
from deduplicator import MemoryDeduplicator
from embeddings import Embeddings
from extractor import AppendOnlyMergePolicy, MemoryExtractor
from llm_client import LlmClient
from memory_types import ExtractionStats
from recall import RecallScorer, format_recall_context
from settings import Settings, load_settings

_ROLE_PREFIXES = {"user": "Human", "assistant": "Assistant"}

MIN_CAPTURE_CHARS = 50
TRUNCATION_MARKER = "\u2026"
DEFAULT_SESSION_KEY = "unknown"


def conversation_text_from_messages(messages: Iterable[Any]) -> str:
    """
    Flatten chat messages into "Human: ..." / "Assistant: ..." lines.

    Only user and assistant turns are kept. Content may be a string or a
    list of blocks, of which only ``{"type": "text"}`` blocks count.
    """
    parts: List[str] = []
    for message in messages or []:
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        prefix = _ROLE_PREFIXES.get(role) if isinstance(role, str) else None
        if prefix is None:
            continue
        content = message.get("content")
        if isinstance(content, str):
            parts.append(f"{prefix}: {content}")
        elif isinstance(content, list):
            for block in content:
                if (
                    isinstance(block, dict)
                    and block.get("type") == "text"
                    and isinstance(block.get("text"), str)
                ):
                    parts.append(f"{prefix}: {block['text']}")
    return "\n\n".join(parts)


def truncate_conversation(text: Optional[str], max_chars: int) -> str:
    text = (text or "").strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


class MemoryService:
    def __init__(
        self,
        settings: Settings,
        *,
        store: MemoryStore,
        embeddings: Embeddings,
        llm: LlmClient,
        checkpoints: Optional[CheckpointManager] = None,
        append_only_merge_policy: AppendOnlyMergePolicy = AppendOnlyMergePolicy.STORE_AS_NEW,
    ) -> None:
        self.settings = settings
        self.store = store
        self.embeddings = embeddings
        self.llm = llm
        self.checkpoints = checkpoints
        self.deduplicator = MemoryDeduplicator(store, llm)
        self.extractor = MemoryExtractor(
            store,
            embeddings,
            llm,
            self.deduplicator,
            append_only_merge_policy=append_only_merge_policy,
        )
        self.recall_scorer = RecallScorer(
            store,
            embeddings,
            limit=settings.recall_limit,
            min_score=settings.recall_min_score,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MemoryService":
        settings = settings or load_settings()
        store = MemoryStore(
            settings.database_url, settings.embedding_dim, decay=settings.decay
        )
        embeddings = Embeddings(
            backend=settings.embedding_backend,
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            api_base=settings.embedding_api_base,
            api_key=settings.embedding_api_key,
            timeout_sec=settings.remote_timeout_sec,
            send_dimensions=settings.embedding_send_dimensions,
        )
        llm = LlmClient(
            model=settings.llm_model,
            api_base=settings.llm_api_base,
            api_key=settings.llm_api_key,
            timeout_sec=settings.remote_timeout_sec,
        )
        checkpoints = (
            CheckpointManager(settings.checkpoint_path)
            if settings.checkpoint_enabled
            else None
        )
        return cls(
            settings, store=store, embeddings=embeddings, llm=llm, checkpoints=checkpoints
        )

    async def startup(self) -> List[ExtractionStats]:
        """Initialize the store and resume unfinished extractions when enabled."""
        await self.store.init_db()
        if self.checkpoints is None or not self.settings.checkpoint_auto_recover:
            return []
        results = await self.extractor.resume_incomplete(self.checkpoints)
        if results:
            total = ExtractionStats()
            for stats in results:
                total.add(stats)
            logger.info(
                f"epro-memory: resumed {len(results)} extraction(s): {total.as_dict()}"
            )
        return results

    async def capture(
        self, conversation_text: str, session_key: Optional[str], user: str = "User"
    ) -> ExtractionStats:
        """
        Extract memories from a finished conversation.

        Text longer than ``extract_max_chars`` keeps its head and gets a
        trailing ellipsis; text shorter than ``MIN_CAPTURE_CHARS`` is ignored.
        A missing session key is recorded as "unknown".

        Never raises: a failed batch is logged and reported as the stats
        gathered so far (zero when extraction itself failed).
        """
        text = truncate_conversation(conversation_text, self.settings.extract_max_chars)
        if len(text) < MIN_CAPTURE_CHARS:
            logger.debug(f"epro-memory: conversation too short to capture ({len(text)} chars)")
            return ExtractionStats()
        session_key = session_key or DEFAULT_SESSION_KEY

        try:
            if self.checkpoints is not None:
                return await self.extractor.extract_with_checkpoint(
                    text, session_key, user, self.checkpoints
                )
            return await self.extractor.extract_and_persist(text, session_key, user)
        except Exception as exc:
            logger.warning(f"epro-memory: extraction failed for {session_key}: {exc}")
            return ExtractionStats()

    async def capture_messages(
        self, messages: Iterable[Any], session_key: str, user: str = "User"
    ) -> ExtractionStats:
        messages = list(messages or [])
        if len(messages) < self.settings.extract_min_messages:
            logger.debug(
                f"epro-memory: {len(messages)} message(s) is below the capture minimum "
                f"of {self.settings.extract_min_messages}"
            )
            return ExtractionStats()
        return await self.capture(conversation_text_from_messages(messages), session_key, user)

    async def recall(self, query: str) -> List[SearchHit]:
        return await self.recall_scorer.recall(query)

    async def recall_context(self, query: str) -> str:
        return format_recall_context(await self.recall(query))

    async def close(self) -> None:
        await self.store.close()
