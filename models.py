"""Shared data models for superlocalmemory."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

MemoryCategory = Literal["decision", "preference", "code-pattern", "error-fix", "architecture", "other"]

VALID_CATEGORIES = frozenset(
    {"decision", "preference", "code-pattern", "error-fix", "architecture", "other"}
)
DEFAULT_CATEGORY = "other"


class MemoryEntry(BaseModel):
    """A stored memory.

    ``embedding`` is empty for rows imported through ``store_raw`` that have not
    been embedded yet, and for entries returned by relation lookups.
    """

    id: str  # UUID string
    content: str
    embedding: list[float] = Field(default_factory=list)
    created_at: int  # ms since epoch, refreshed on dedup merge
    source: str = ""
    tags: list[str] = Field(default_factory=list)
    category: str = DEFAULT_CATEGORY


class MemorySearchResult(BaseModel):
    entry: MemoryEntry
    score: float


class StoreResult(BaseModel):
    entry: MemoryEntry
    is_duplicate: bool = False
    updated_id: str | None = None


class ProfileData(BaseModel):
    """Singleton profile row."""

    summary: str = ""
    facts: list[str] = Field(default_factory=list)
    updated_at: int
    capture_count: int = 0


class MemoryStats(BaseModel):
    total_memories: int = 0
    categories: dict[str, int] = Field(default_factory=dict)
    edge_count: int = 0
    last_capture_time: int | None = None


class IndexResult(BaseModel):
    indexed: int = 0
    skipped: int = 0
