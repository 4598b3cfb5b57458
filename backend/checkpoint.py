"""
Checkpoints for resumable memory extraction.

A checkpoint holds the full, already-extracted candidate list for one
session plus the index of the last candidate that finished processing.
Resuming needs only the checkpoint, never the original conversation.

Files live at ``{base_path}/{safe_session_key}.json`` and are replaced
atomically under one directory-wide file lock.
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from enum import Enum
from pathlib import Path
from typing import List, Optional

from filelock import FileLock
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from memory_types import CandidateMemory

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class ExtractionStage(str, Enum):
    EXTRACTING = "extracting"
    DEDUPING = "deduping"
    STORING = "storing"


class ExtractionCheckpoint(BaseModel):
    session_key: str = Field(min_length=1)
    stage: ExtractionStage
    candidates: List[CandidateMemory]
    # -1 means nothing processed yet
    processed_index: int = Field(ge=-1)
    timestamp: int
    user: str = ""

    model_config = {"frozen": True}

    @property
    def is_complete(self) -> bool:
        return self.processed_index >= len(self.candidates) - 1

    @property
    def next_index(self) -> int:
        return self.processed_index + 1


def _now_ms() -> int:
    return int(time.time() * 1000)


class CheckpointManager:
    def __init__(self, base_path: str, *, lock_timeout_seconds: float = 10.0) -> None:
        self.base_path = Path(os.path.expanduser(base_path))
        self.lock_timeout_seconds = lock_timeout_seconds

    def path_for(self, session_key: str) -> Path:
        safe_key = _UNSAFE_KEY_CHARS.sub("_", session_key)
        return self.base_path / f"{safe_key}.json"

    def _lock(self) -> FileLock:
        return FileLock(
            str(self.base_path / ".checkpoints.lock"), timeout=self.lock_timeout_seconds
        )

    # -------------------------------------------------------------------------
    # Pure helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def create_initial(
        session_key: str, candidates: List[CandidateMemory], user: str
    ) -> ExtractionCheckpoint:
        return ExtractionCheckpoint(
            session_key=session_key,
            stage=ExtractionStage.EXTRACTING,
            candidates=list(candidates),
            processed_index=-1,
            timestamp=_now_ms(),
            user=user,
        )

    @staticmethod
    def update_progress(
        checkpoint: ExtractionCheckpoint,
        processed_index: int,
        stage: ExtractionStage = ExtractionStage.STORING,
    ) -> ExtractionCheckpoint:
        return checkpoint.model_copy(
            update={
                "stage": stage,
                "processed_index": processed_index,
                "timestamp": _now_ms(),
            }
        )

    # -------------------------------------------------------------------------
    # File I/O
    # -------------------------------------------------------------------------

    def _save_sync(self, checkpoint: ExtractionCheckpoint) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)
        path = self.path_for(checkpoint.session_key)
        tmp_path = path.with_suffix(".json.tmp")
        with self._lock():
            tmp_path.write_text(checkpoint.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, path)

    def _read_sync(self, path: Path) -> Optional[ExtractionCheckpoint]:
        """Parse one checkpoint file; corrupt or missing files read as None."""
        if not path.is_file():
            return None
        try:
            with self._lock():
                raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError:
            logger.warning(f"epro-memory: unreadable checkpoint file {path.name}")
            return None
        try:
            return ExtractionCheckpoint.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                f"epro-memory: invalid checkpoint structure in {path.name}: "
                f"{exc.error_count()} error(s)"
            )
            return None

    def _clear_sync(self, session_key: str) -> None:
        path = self.path_for(session_key)
        if not self.base_path.is_dir():
            return
        with self._lock():
            path.unlink(missing_ok=True)

    def _find_incomplete_sync(self) -> List[ExtractionCheckpoint]:
        if not self.base_path.is_dir():
            return []
        incomplete: List[ExtractionCheckpoint] = []
        for path in sorted(self.base_path.glob("*.json")):
            checkpoint = self._read_sync(path)
            if checkpoint is None or checkpoint.is_complete:
                continue
            incomplete.append(checkpoint)
            logger.info(
                f"epro-memory: found incomplete extraction: {checkpoint.session_key} "
                f"({checkpoint.processed_index + 1}/{len(checkpoint.candidates)})"
            )
        incomplete.sort(key=lambda item: item.timestamp)
        return incomplete

    async def save(self, checkpoint: ExtractionCheckpoint) -> None:
        await asyncio.to_thread(self._save_sync, checkpoint)
        logger.debug(
            f"epro-memory: checkpoint saved for {checkpoint.session_key}, "
            f"index={checkpoint.processed_index}"
        )

    async def load(self, session_key: str) -> Optional[ExtractionCheckpoint]:
        checkpoint = await asyncio.to_thread(self._read_sync, self.path_for(session_key))
        if checkpoint is not None and checkpoint.session_key != session_key:
            # Two keys can sanitize to the same file name.
            logger.warning(
                f"epro-memory: checkpoint file for {session_key} belongs to "
                f"{checkpoint.session_key}, ignoring"
            )
            return None
        return checkpoint

    async def clear(self, session_key: str) -> None:
        await asyncio.to_thread(self._clear_sync, session_key)
        logger.debug(f"epro-memory: checkpoint cleared for {session_key}")

    async def find_incomplete(self) -> List[ExtractionCheckpoint]:
        return await asyncio.to_thread(self._find_incomplete_sync)
