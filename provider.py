"""
Memory orchestrator for superlocalmemory.

MemoryProvider owns one MemoryStore and one EmbeddingChain. It initializes
them lazily, so store/search/forget callers never sequence initialization
themselves.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from pathlib import Path

from config import Config
from embeddings import EmbeddingChain, build_embedding_chain
from errors import NotInitializedError
from models import (
    DEFAULT_CATEGORY,
    IndexResult,
    MemoryEntry,
    MemorySearchResult,
    MemoryStats,
)
from store import MemoryStore
from utils import log, truncate_text

INDEX_SOURCE = "mcp:index"
INDEX_TAG = "project-index"
CAPTURE_SOURCE = "mcp:autosave"
CAPTURE_TAG = "autosave"


class MemoryProvider:
    """Facade over the store and the embedding chain.

    Construct once per process and hand the instance to every consumer.
    ``config`` and ``embedder`` are resolved on first initialization when not
    supplied.
    """

    def __init__(self, config: Config | None = None, embedder: EmbeddingChain | None = None):
        self._config = config
        self._embedder = embedder
        self._db: MemoryStore | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = Config.from_env()
        return self._config

    @property
    def db(self) -> MemoryStore:
        if self._db is None:
            raise NotInitializedError("MemoryProvider not initialized")
        return self._db

    @property
    def db_path(self) -> Path:
        return self.config.resolve_db_path()

    async def _is_live(self) -> bool:
        return self._initialized and self._db is not None and await self._db.is_open()

    async def ensure_initialized(self) -> None:
        """Open the store and build the embedding chain if not already live.

        Concurrent callers are serialized; only the first one opens (or
        reopens) the store, the rest find it live.
        """
        if await self._is_live():
            return

        async with self._init_lock:
            if await self._is_live():
                return

            if self._db is not None:
                log("Store handle is not usable, reopening", "WARN")
                await self._db.reopen()
                self._initialized = True
                return

            cfg = self.config
            db_path = cfg.resolve_db_path()
            db_path.parent.mkdir(parents=True, exist_ok=True)

            if self._embedder is None:
                self._embedder = build_embedding_chain(cfg)

            self._db = await MemoryStore(db_path, self._embedder.dimension).open()
            self._initialized = True
            log(f"Initialized DB at {db_path}")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
        self._initialized = False

    def _require_ready(self) -> tuple[MemoryStore, EmbeddingChain]:
        if self._db is None or self._embedder is None:
            raise NotInitializedError("MemoryProvider not initialized")
        return self._db, self._embedder

    # ============ Store / Search / Forget ============

    async def store(
        self,
        content: str,
        category: str = DEFAULT_CATEGORY,
        source: str = "mcp",
        tags: list[str] | None = None,
    ) -> MemoryEntry:
        await self.ensure_initialized()
        db, embedder = self._require_ready()

        embedding = await embedder.embed(content)
        result = await db.store(
            content,
            embedding,
            category=category,
            source=source,
            tags=tags or [],
            dedupe_threshold=self.config.dedup_threshold,
        )
        if result.is_duplicate:
            log(f"Merged near-duplicate into memory {result.updated_id}")
        return result.entry

    async def search(
        self,
        query: str,
        limit: int | None = None,
        boost_categories: dict[str, float] | None = None,
    ) -> list[MemorySearchResult]:
        await self.ensure_initialized()
        db, embedder = self._require_ready()

        limit = limit if limit is not None else self.config.max_recall_results
        embedding = await embedder.embed(query)
        if boost_categories:
            return await db.vector_search_boosted(
                embedding, limit, self.config.min_score, boost_categories
            )
        return await db.vector_search(embedding, limit, self.config.min_score)

    async def forget_by_query(self, query: str, threshold: float = 0.8) -> int:
        await self.ensure_initialized()
        db, embedder = self._require_ready()

        embedding = await embedder.embed(query)
        return await db.delete_by_query(embedding, threshold)

    async def forget_by_id(self, memory_id: str) -> bool:
        return await self.db.delete(memory_id)

    async def link(self, from_id: str, to_id: str, relation: str) -> str:
        await self.ensure_initialized()
        return await self.db.add_edge(from_id, to_id, relation)

    async def related(self, memory_id: str, relation: str | None = None) -> list[MemoryEntry]:
        await self.ensure_initialized()
        return await self.db.get_related(memory_id, relation)

    async def count(self) -> int:
        if self._db is None:
            return 0
        return await self._db.count()

    async def stats(self) -> MemoryStats:
        if self._db is None:
            return MemoryStats()
        return await self._db.stats()

    # ============ Indexing / Capture ============

    async def index_workspace(
        self,
        files: Iterable[Path],
        root: Path | None = None,
        max_files: int | None = None,
        max_chars_per_file: int | None = None,
    ) -> IndexResult:
        """Best-effort project indexing: stores file contents (truncated) as memories.

        ``files`` comes from an external enumerator. A file that cannot be read
        or stored is counted as skipped and does not stop the run.
        """
        await self.ensure_initialized()
        max_files = max_files if max_files is not None else self.config.index_max_files
        max_chars = (
            max_chars_per_file if max_chars_per_file is not None else self.config.index_max_chars
        )

        result = IndexResult()
        for i, path in enumerate(files):
            if i >= max_files:
                break
            try:
                text = Path(path).read_text(encoding="utf-8")
                rel = Path(path).relative_to(root) if root is not None else Path(path)
                await self.store(
                    f"File: {rel.as_posix()}\n\n{truncate_text(text, max_chars)}",
                    "architecture",
                    INDEX_SOURCE,
                    [INDEX_TAG],
                )
                result.indexed += 1
            except Exception as e:
                log(f"Skipping {path}: {e}", "WARN")
                result.skipped += 1

        log(f"Indexed {result.indexed} files (skipped {result.skipped})")
        return result

    async def capture(self, content: str, path: str | None = None) -> MemoryEntry | None:
        """Record an auto-capture event (e.g. a file save).

        Returns None without storing anything when auto-capture is disabled.
        """
        if not self.config.auto_capture:
            return None
        await self.ensure_initialized()

        snippet = truncate_text(content, self.config.capture_max_chars)
        text = f"Saved: {path}\n\n{snippet}" if path else snippet
        entry = await self.store(text, "code-pattern", CAPTURE_SOURCE, [CAPTURE_TAG])
        count = await self.db.increment_capture_count()
        log(f"Auto-captured memory {entry.id} (capture #{count})")
        return entry
