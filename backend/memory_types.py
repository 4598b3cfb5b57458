"""
Shared types for the ePro memory engine.

Six-category classification:
- user memory: profile, preferences, entities, events
- agent memory: cases, patterns

Each category carries its merge policy, so call sites branch on
``category.merge_policy`` instead of keeping their own category sets.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, field_validator


class MergePolicy(str, Enum):
    ALWAYS_MERGE = "always_merge"
    MERGE_SUPPORTED = "merge_supported"
    APPEND_ONLY = "append_only"


class MemoryCategory(str, Enum):
    PROFILE = "profile"
    PREFERENCES = "preferences"
    ENTITIES = "entities"
    EVENTS = "events"
    CASES = "cases"
    PATTERNS = "patterns"

    @property
    def merge_policy(self) -> MergePolicy:
        return _CATEGORY_POLICIES[self]


_CATEGORY_POLICIES: Dict[MemoryCategory, MergePolicy] = {
    MemoryCategory.PROFILE: MergePolicy.ALWAYS_MERGE,
    MemoryCategory.PREFERENCES: MergePolicy.MERGE_SUPPORTED,
    MemoryCategory.ENTITIES: MergePolicy.MERGE_SUPPORTED,
    MemoryCategory.PATTERNS: MergePolicy.MERGE_SUPPORTED,
    MemoryCategory.EVENTS: MergePolicy.APPEND_ONLY,
    MemoryCategory.CASES: MergePolicy.APPEND_ONLY,
}

MEMORY_CATEGORY_VALUES = frozenset(item.value for item in MemoryCategory)


class CandidateMemory(BaseModel):
    """A memory extracted from a conversation, before dedup decides its fate."""

    category: MemoryCategory
    abstract: str
    overview: str = ""
    content: str

    @field_validator("abstract", "content")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("overview", mode="before")
    @classmethod
    def _overview_or_empty(cls, value: object) -> object:
        return "" if value is None else value

    def embedding_text(self) -> str:
        return f"{self.abstract} {self.content}"


class DedupDecision(str, Enum):
    CREATE = "create"
    MERGE = "merge"
    SKIP = "skip"


class DedupPath(str, Enum):
    """How a dedup verdict was reached."""

    ARBITRATED = "arbitrated"
    DEFAULTED = "defaulted"


@dataclass(frozen=True)
class DedupResult:
    decision: DedupDecision
    reason: str
    path: DedupPath
    match_id: Optional[str] = None

    @classmethod
    def defaulted(cls, reason: str) -> "DedupResult":
        """Fallback verdict: keep the candidate as a new memory."""
        return cls(decision=DedupDecision.CREATE, reason=reason, path=DedupPath.DEFAULTED)


@dataclass
class ExtractionStats:
    created: int = 0
    merged: int = 0
    skipped: int = 0

    def add(self, other: "ExtractionStats") -> None:
        self.created += other.created
        self.merged += other.merged
        self.skipped += other.skipped

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)
