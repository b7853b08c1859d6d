"""
SQLite memory store for superlocalmemory.

One database file holds memories, the edges between them, the singleton
profile row and per-peer sync cursors. Retrieval is a linear scan over every
stored embedding, which is fine for tens of thousands of rows; beyond that the
scan should be replaced with a vector index.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
import numpy as np

from errors import NotInitializedError, StorageIOError, ValidationError
from models import (
    DEFAULT_CATEGORY,
    MemoryEntry,
    MemorySearchResult,
    MemoryStats,
    ProfileData,
    StoreResult,
)
from similarity import cosine_similarity
from utils import is_valid_memory_id, log, now_ms

PROFILE_ID = "user_profile"
FORGET_CANDIDATE_LIMIT = 10

SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    embedding BLOB,
    created_at INTEGER NOT NULL,
    source TEXT DEFAULT '',
    tags TEXT DEFAULT '[]',
    category TEXT DEFAULT 'other'
);

CREATE TABLE IF NOT EXISTS memory_edges (
    id TEXT PRIMARY KEY,
    from_id TEXT NOT NULL,
    to_id TEXT NOT NULL,
    relation TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    FOREIGN KEY (from_id) REFERENCES memories(id) ON DELETE CASCADE,
    FOREIGN KEY (to_id) REFERENCES memories(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS profile (
    id TEXT PRIMARY KEY DEFAULT 'user_profile',
    summary TEXT DEFAULT '',
    facts TEXT DEFAULT '[]',
    updated_at INTEGER NOT NULL,
    capture_count INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS sync_state (
    peer_id TEXT PRIMARY KEY,
    last_sync_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_category ON memories(category);
CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_edges_from ON memory_edges(from_id);
CREATE INDEX IF NOT EXISTS idx_edges_to ON memory_edges(to_id);
"""

MEMORY_COLUMNS = "id, content, embedding, created_at, source, tags, category"


# =============================================================================
# Embedding Blobs
# =============================================================================


def encode_embedding(embedding: Sequence[float] | np.ndarray) -> bytes:
    """Raw float64 array in native byte order; the dimension is not stored."""
    return np.asarray(embedding, dtype=np.float64).tobytes()


def _decode_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float64)


def decode_embedding(blob: bytes) -> list[float]:
    """Inverse of encode_embedding. Raises ValueError for a truncated blob."""
    return _decode_vector(blob).tolist()


def _require_valid_id(memory_id: str) -> None:
    if not is_valid_memory_id(memory_id):
        raise ValidationError(f"Invalid memory ID: {memory_id}")


def _parse_list(raw: str | None) -> list[str]:
    """Decode a JSON list column; anything unreadable becomes an empty list."""
    try:
        value = json.loads(raw or "[]")
    except (TypeError, ValueError):
        return []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


class MemoryStore:
    """Durable store of memories, edges, profile and sync cursors.

    Call ``await open()`` (or use ``async with``) before any other method;
    operations on a store that is not open raise NotInitializedError.
    """

    def __init__(self, db_path: Path | str, dimension: int = 384):
        self.db_path = Path(db_path)
        self.dimension = dimension  # not stored per row; readers must know it
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    # ============ Lifecycle ============

    async def open(self) -> MemoryStore:
        """Connect, enable WAL and foreign keys, and create the schema if needed."""
        log(f"Opening memory store at {self.db_path}")
        db = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(str(self.db_path))
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA foreign_keys=ON")
            await db.executescript(SCHEMA)
            await db.commit()
        except (sqlite3.Error, OSError) as e:
            if db is not None:
                await db.close()
            raise StorageIOError(f"Cannot open memory store at {self.db_path}: {e}") from e
        self._db = db
        return self

    async def close(self) -> None:
        if self._db is None:
            return
        try:
            await self._db.close()
        finally:
            self._db = None

    async def is_open(self) -> bool:
        """Liveness probe: True only if the connection still answers queries."""
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except Exception:
            return False

    async def reopen(self) -> None:
        """Drop the current handle (ignoring close errors) and connect again."""
        if self._db is not None:
            try:
                await self._db.close()
            except Exception as e:
                log(f"Ignoring error while closing stale connection: {e}", "WARN")
            self._db = None
        await self.open()

    async def __aenter__(self) -> MemoryStore:
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise NotInitializedError("Memory store is not open")
        return self._db

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[aiosqlite.Connection]:
        db = self._conn()
        try:
            yield db
        except sqlite3.Error as e:
            raise StorageIOError(f"Memory store read failed: {e}") from e

    async def _fetchall(self, sql: str, params: Sequence = ()) -> list[aiosqlite.Row]:
        async with self._reading() as db:
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: Sequence = ()) -> aiosqlite.Row | None:
        async with self._reading() as db:
            async with db.execute(sql, params) as cursor:
                return await cursor.fetchone()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Commit on success; roll back on any error, surfacing SQLite errors as StorageIOError."""
        db = self._conn()
        try:
            yield db
            await db.commit()
        except Exception as e:
            try:
                await db.rollback()
            except sqlite3.Error as rollback_error:
                log(f"Rollback failed: {rollback_error}", "WARN")
            if isinstance(e, sqlite3.Error):
                raise StorageIOError(f"Memory store write failed: {e}") from e
            raise

    def _row_to_entry(self, row: aiosqlite.Row, embedding: list[float] | None = None) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            content=row["content"],
            embedding=embedding or [],
            created_at=row["created_at"],
            source=row["source"] or "",
            tags=_parse_list(row["tags"]),
            category=row["category"] or DEFAULT_CATEGORY,
        )

    # ============ Memories ============

    async def store(
        self,
        content: str,
        embedding: Sequence[float],
        *,
        source: str = "",
        tags: Sequence[str] | None = None,
        category: str | None = None,
        dedupe_threshold: float = 0.95,
    ) -> StoreResult:
        """Insert a memory, or merge it into the closest existing one.

        If the best match scores >= dedupe_threshold, that row is overwritten in
        place (content, embedding, created_at, source, tags; category only when
        given) and its id is reported as ``updated_id``.
        """
        tags = list(tags or [])
        embedding = [float(v) for v in embedding]
        async with self._write_lock:
            existing = await self.vector_search(embedding, limit=1, min_score=dedupe_threshold)
            now = now_ms()

            if existing:
                match = existing[0].entry
                entry = MemoryEntry(
                    id=match.id,
                    content=content,
                    embedding=embedding,
                    created_at=now,
                    source=source,
                    tags=tags,
                    category=category or match.category,
                )
                async with self._transaction() as db:
                    await db.execute(
                        "UPDATE memories SET content = ?, embedding = ?, created_at = ?, "
                        "source = ?, tags = ?, category = ? WHERE id = ?",
                        (
                            entry.content,
                            encode_embedding(embedding),
                            entry.created_at,
                            entry.source,
                            json.dumps(entry.tags),
                            entry.category,
                            entry.id,
                        ),
                    )
                return StoreResult(entry=entry, is_duplicate=True, updated_id=match.id)

            entry = MemoryEntry(
                id=str(uuid.uuid4()),
                content=content,
                embedding=embedding,
                created_at=now,
                source=source,
                tags=tags,
                category=category or DEFAULT_CATEGORY,
            )
            async with self._transaction() as db:
                await db.execute(
                    f"INSERT INTO memories ({MEMORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        entry.id,
                        entry.content,
                        encode_embedding(embedding),
                        entry.created_at,
                        entry.source,
                        json.dumps(entry.tags),
                        entry.category,
                    ),
                )
            return StoreResult(entry=entry)

    async def vector_search(
        self, query: Sequence[float], limit: int = 5, min_score: float = 0.3
    ) -> list[MemorySearchResult]:
        """Score every embedded row against query; best first, at most limit.

        Rows without an embedding, or with an undecodable one, are skipped.
        """
        query_vec = np.asarray(query, dtype=np.float64)
        results: list[MemorySearchResult] = []

        async with self._reading() as db:
            async with db.execute(f"SELECT {MEMORY_COLUMNS} FROM memories") as cursor:
                async for row in cursor:
                    if not row["embedding"]:
                        continue
                    try:
                        stored = _decode_vector(row["embedding"])
                    except ValueError:
                        continue
                    score = cosine_similarity(query_vec, stored)
                    if score >= min_score:
                        entry = self._row_to_entry(row, stored.tolist())
                        results.append(MemorySearchResult(entry=entry, score=score))

        results.sort(key=lambda r: r.score, reverse=True)
        return results[: max(limit, 0)]

    async def vector_search_boosted(
        self,
        query: Sequence[float],
        limit: int = 5,
        min_score: float = 0.3,
        boost_categories: dict[str, float] | None = None,
    ) -> list[MemorySearchResult]:
        """vector_search over 2*limit candidates with per-category score multipliers (capped at 1.0)."""
        results = await self.vector_search(query, limit * 2, min_score)
        boosts = boost_categories or {}
        for result in results:
            boost = boosts.get(result.entry.category)
            if boost:
                result.score = min(result.score * boost, 1.0)
        results.sort(key=lambda r: r.score, reverse=True)
        return results[: max(limit, 0)]

    async def delete(self, memory_id: str) -> bool:
        """Delete one memory and every edge touching it. Malformed ids raise ValidationError."""
        _require_valid_id(memory_id)
        async with self._transaction() as db:
            await db.execute(
                "DELETE FROM memory_edges WHERE from_id = ? OR to_id = ?", (memory_id, memory_id)
            )
            cursor = await db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        return cursor.rowcount > 0

    async def delete_by_source(self, source: str) -> int:
        async with self._transaction() as db:
            async with db.execute("SELECT id FROM memories WHERE source = ?", (source,)) as cursor:
                ids = [row["id"] for row in await cursor.fetchall()]
            await db.executemany(
                "DELETE FROM memory_edges WHERE from_id = ? OR to_id = ?",
                [(memory_id, memory_id) for memory_id in ids],
            )
            cursor = await db.execute("DELETE FROM memories WHERE source = ?", (source,))
        return cursor.rowcount

    async def delete_by_query(self, embedding: Sequence[float], threshold: float = 0.8) -> int:
        """Semantic forget: delete up to 10 memories scoring >= threshold.

        Best-effort; the count is informational and depends on embedding quality.
        """
        async with self._write_lock:
            matches = await self.vector_search(embedding, FORGET_CANDIDATE_LIMIT, threshold)
            ids = [match.entry.id for match in matches]
            async with self._transaction() as db:
                for memory_id in ids:
                    await db.execute(
                        "DELETE FROM memory_edges WHERE from_id = ? OR to_id = ?",
                        (memory_id, memory_id),
                    )
                    await db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        return len(ids)

    async def count(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS cnt FROM memories")
        return row["cnt"]

    async def get_all_content(self, limit: int = 100) -> list[str]:
        """Most recent contents first."""
        rows = await self._fetchall(
            "SELECT content FROM memories ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        return [row["content"] for row in rows]

    async def get_last_capture_time(self) -> int | None:
        row = await self._fetchone("SELECT MAX(created_at) AS ts FROM memories")
        return row["ts"]

    async def stats(self) -> MemoryStats:
        rows = await self._fetchall(
            "SELECT category, COUNT(*) AS cnt FROM memories GROUP BY category"
        )
        return MemoryStats(
            total_memories=await self.count(),
            categories={row["category"]: row["cnt"] for row in rows},
            edge_count=await self.edge_count(),
            last_capture_time=await self.get_last_capture_time(),
        )

    async def get_memories_since(self, timestamp: int) -> list[MemoryEntry]:
        """Memories created strictly after timestamp, oldest first, without embeddings."""
        rows = await self._fetchall(
            f"SELECT {MEMORY_COLUMNS} FROM memories WHERE created_at > ? ORDER BY created_at ASC",
            (timestamp,),
        )
        return [self._row_to_entry(row) for row in rows]

    async def get_all_memory_ids(self) -> list[tuple[str, int]]:
        """(id, created_at) for every memory."""
        rows = await self._fetchall("SELECT id, created_at FROM memories")
        return [(row["id"], row["created_at"]) for row in rows]

    async def get_memories_by_ids(self, ids: Sequence[str]) -> list[MemoryEntry]:
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = await self._fetchall(
            f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id IN ({placeholders})", tuple(ids)
        )
        return [self._row_to_entry(row) for row in rows]

    # ============ Bulk Import ============

    async def store_raw(self, entry: MemoryEntry) -> bool:
        """Import a memory without embedding it.

        Updates the row when the id exists. Otherwise returns False if a row
        with identical content exists, else inserts with a NULL embedding to be
        filled later by set_embedding.
        """
        _require_valid_id(entry.id)
        async with self._transaction() as db:
            async with db.execute("SELECT id FROM memories WHERE id = ?", (entry.id,)) as cursor:
                existing = await cursor.fetchone()
            if existing:
                await db.execute(
                    "UPDATE memories SET content = ?, created_at = ?, source = ?, tags = ?, "
                    "category = ? WHERE id = ?",
                    (
                        entry.content,
                        entry.created_at,
                        entry.source,
                        json.dumps(entry.tags),
                        entry.category,
                        entry.id,
                    ),
                )
                return True

            async with db.execute(
                "SELECT id FROM memories WHERE content = ? LIMIT 1", (entry.content,)
            ) as cursor:
                if await cursor.fetchone():
                    return False

            await db.execute(
                f"INSERT INTO memories ({MEMORY_COLUMNS}) VALUES (?, ?, NULL, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.content,
                    entry.created_at,
                    entry.source,
                    json.dumps(entry.tags),
                    entry.category,
                ),
            )
        return True

    async def set_embedding(self, memory_id: str, embedding: Sequence[float]) -> bool:
        _require_valid_id(memory_id)
        async with self._transaction() as db:
            cursor = await db.execute(
                "UPDATE memories SET embedding = ? WHERE id = ?",
                (encode_embedding(embedding), memory_id),
            )
        return cursor.rowcount > 0

    # ============ Edges ============

    async def add_edge(
        self, from_id: str, to_id: str, relation: str, edge_id: str | None = None
    ) -> str:
        """Link two memories. Re-inserting an existing edge id is a no-op."""
        _require_valid_id(from_id)
        _require_valid_id(to_id)
        edge_id = edge_id or str(uuid.uuid4())
        async with self._transaction() as db:
            try:
                await db.execute(
                    "INSERT OR IGNORE INTO memory_edges (id, from_id, to_id, relation, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (edge_id, from_id, to_id, relation, now_ms()),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Cannot link {from_id} -> {to_id}: {e}") from e
        return edge_id

    async def get_related(self, memory_id: str, relation: str | None = None) -> list[MemoryEntry]:
        """Memories linked to memory_id in either direction, excluding itself."""
        sql = (
            "SELECT DISTINCT m.id, m.content, m.created_at, m.source, m.tags, m.category "
            "FROM memories m "
            "JOIN memory_edges e ON (e.to_id = m.id OR e.from_id = m.id) "
            "WHERE (e.from_id = ? OR e.to_id = ?) AND m.id != ?"
        )
        params: tuple[str, ...] = (memory_id, memory_id, memory_id)
        if relation:
            sql += " AND e.relation = ?"
            params += (relation,)
        return [self._row_to_entry(row) for row in await self._fetchall(sql, params)]

    async def edge_count(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS cnt FROM memory_edges")
        return row["cnt"]

    # ============ Profile ============

    async def get_profile(self) -> ProfileData | None:
        row = await self._fetchone(
            "SELECT summary, facts, updated_at, capture_count FROM profile WHERE id = ?",
            (PROFILE_ID,),
        )
        if row is None:
            return None
        return ProfileData(
            summary=row["summary"] or "",
            facts=_parse_list(row["facts"]),
            updated_at=row["updated_at"],
            capture_count=row["capture_count"] or 0,
        )

    async def set_profile(self, profile: ProfileData) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR REPLACE INTO profile (id, summary, facts, updated_at, capture_count) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    PROFILE_ID,
                    profile.summary,
                    json.dumps(profile.facts),
                    profile.updated_at,
                    profile.capture_count,
                ),
            )

    async def increment_capture_count(self) -> int:
        """Bump the profile's capture counter, creating the profile row if needed."""
        async with self._transaction() as db:
            await db.execute(
                "INSERT INTO profile (id, summary, facts, updated_at, capture_count) "
                "VALUES (?, '', '[]', ?, 1) "
                "ON CONFLICT(id) DO UPDATE SET capture_count = capture_count + 1",
                (PROFILE_ID, now_ms()),
            )
            async with db.execute(
                "SELECT capture_count FROM profile WHERE id = ?", (PROFILE_ID,)
            ) as cursor:
                row = await cursor.fetchone()
        return row["capture_count"]

    # ============ Sync Cursors ============

    async def get_last_sync_time(self, peer_id: str) -> int:
        row = await self._fetchone(
            "SELECT last_sync_at FROM sync_state WHERE peer_id = ?", (peer_id,)
        )
        return row["last_sync_at"] if row else 0

    async def set_last_sync_time(self, peer_id: str, timestamp: int) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT INTO sync_state (peer_id, last_sync_at) VALUES (?, ?) "
                "ON CONFLICT(peer_id) DO UPDATE SET last_sync_at = excluded.last_sync_at",
                (peer_id, timestamp),
            )
