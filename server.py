#!/usr/bin/env python3
"""
superlocalmemory MCP Server - local-first semantic memory

Provides persistent memory over a single SQLite file using:
- FastMCP for clean, idiomatic MCP server patterns
- aiosqlite for the memories / edges / profile / sync-cursor tables
- Linear-scan cosine search with similarity-based dedup on write
- sentence-transformers (bge-small-en-v1.5, 384-dim) for zero-config local embeddings,
  with optional Gemini (API key) and Ollama (local server) tiers in front of it
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from errors import MemoryStoreError
from models import DEFAULT_CATEGORY, VALID_CATEGORIES
from provider import MemoryProvider
from utils import iter_workspace_files, log

SNIPPET_CHARS = 400

# =============================================================================
# Provider (owned by the server, shared by every tool)
# =============================================================================

_lock = threading.Lock()
_provider: MemoryProvider | None = None


def get_provider() -> MemoryProvider:
    """Get or create the server's MemoryProvider (thread-safe)."""
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:  # Double-check after acquiring lock
                _provider = MemoryProvider()
    return _provider


def set_provider(provider: MemoryProvider | None) -> None:
    """Replace the server's provider (used by tests and embedding hosts)."""
    global _provider
    with _lock:
        _provider = provider


# =============================================================================
# Formatting
# =============================================================================


def _normalize_category(category: str | None) -> tuple[str | None, str | None]:
    """Normalize and validate a category string."""
    if category is None:
        return None, None
    normalized = category.strip().lower()
    if normalized not in VALID_CATEGORIES:
        return None, f"Error: Invalid category '{category}'. Valid: {sorted(VALID_CATEGORIES)}"
    return normalized, None


def _snippet(content: str) -> str:
    text = content if len(content) <= SNIPPET_CHARS else content[:SNIPPET_CHARS] + "…"
    return text.replace("\n", "\n    ")


def _format_time(timestamp_ms: int | None) -> str:
    if not timestamp_ms:
        return "—"
    return datetime.fromtimestamp(timestamp_ms / 1000).isoformat(timespec="seconds")


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "superlocalmemory",
    instructions="Local-first semantic memory: store, recall, link and forget short notes",
)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_save(
    content: str,
    category: str = DEFAULT_CATEGORY,
    tags: list[str] | None = None,
) -> str:
    """Save a memory. Near-duplicates of an existing memory replace it in place.

    Args:
        content: What to remember
        category: One of decision, preference, code-pattern, error-fix, architecture, other
        tags: Optional tags for categorization
    """
    if not content.strip():
        return "Error: content is required"

    normalized_category, error = _normalize_category(category)
    if error:
        return error

    try:
        entry = await get_provider().store(
            content, normalized_category or DEFAULT_CATEGORY, "mcp:tool", tags or []
        )
    except MemoryStoreError as e:
        return f"Error: {e}"
    return f"Stored memory: {entry.id} ({entry.category})\nTags: {entry.tags}"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_recall(
    query: str,
    limit: int | None = None,
    boost_categories: dict[str, float] | None = None,
) -> str:
    """Semantic search across all memories.

    Args:
        query: Search query
        limit: Max results (default from configuration, max 50)
        boost_categories: Optional per-category score multipliers, e.g. {"decision": 1.5}
    """
    if not query.strip():
        return "Error: query is required"

    provider = get_provider()
    if limit is not None:
        if limit <= 0:
            return f"Error: limit must be positive, got {limit}"
        if limit > provider.config.max_limit:
            return f"Error: limit cannot exceed {provider.config.max_limit}, got {limit}"

    try:
        results = await provider.search(query, limit, boost_categories)
    except MemoryStoreError as e:
        return f"Error: {e}"

    if not results:
        return "No matching memories."

    lines = [f"Found {len(results)} memories:\n"]
    for i, result in enumerate(results, 1):
        entry = result.entry
        lines.append(f"[{i}] {entry.category} ({result.score:.1%}) ID: {entry.id}")
        lines.append(f"    {_snippet(entry.content)}")
        if entry.tags:
            lines.append(f"    Tags: {', '.join(entry.tags)}")
        lines.append(f"    Source: {entry.source or '—'} | {_format_time(entry.created_at)}")
        lines.append("")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_forget(query: str, threshold: float | None = None) -> str:
    """Delete memories semantically close to the query (best-effort, up to 10).

    Args:
        query: Description of what to forget
        threshold: Minimum similarity for deletion (default 0.85)
    """
    if not query.strip():
        return "Error: query is required"

    provider = get_provider()
    threshold = threshold if threshold is not None else provider.config.forget_threshold
    try:
        deleted = await provider.forget_by_query(query, threshold)
    except MemoryStoreError as e:
        return f"Error: {e}"
    return f"Deleted {deleted} memories (best-effort)."


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_delete(memory_id: str) -> str:
    """Delete a memory by ID, along with its links.

    Args:
        memory_id: The full UUID of the memory to delete
    """
    provider = get_provider()
    try:
        await provider.ensure_initialized()
        deleted = await provider.forget_by_id(memory_id)
    except MemoryStoreError as e:
        return f"Error: {e}"
    if not deleted:
        return f"Memory {memory_id} not found"
    return f"Deleted memory {memory_id}"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_link(from_id: str, to_id: str, relation: str = "related") -> str:
    """Link two memories with a named relation.

    Args:
        from_id: Source memory UUID
        to_id: Target memory UUID
        relation: Relation label, e.g. "supersedes", "caused-by"
    """
    try:
        edge_id = await get_provider().link(from_id, to_id, relation)
    except MemoryStoreError as e:
        return f"Error: {e}"
    return f"Linked {from_id} -[{relation}]-> {to_id} (edge {edge_id})"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_related(memory_id: str, relation: str | None = None) -> str:
    """List memories linked to a memory in either direction.

    Args:
        memory_id: Memory UUID
        relation: Optional relation label filter
    """
    try:
        entries = await get_provider().related(memory_id, relation)
    except MemoryStoreError as e:
        return f"Error: {e}"
    if not entries:
        return f"No memories linked to {memory_id}"

    lines = [f"Found {len(entries)} related memories:\n"]
    for entry in entries:
        lines.append(f"- [{entry.category}] ID: {entry.id}")
        lines.append(f"    {_snippet(entry.content)}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_stats() -> str:
    """Get memory statistics - total, edges, last capture, by category."""
    provider = get_provider()
    try:
        await provider.ensure_initialized()
        stats = await provider.stats()
    except MemoryStoreError as e:
        return f"Error: {e}"

    lines = [
        "=== Memory Statistics ===",
        f"Total: {stats.total_memories} memories",
        f"Edges: {stats.edge_count}",
        f"Last capture: {_format_time(stats.last_capture_time)}",
        f"Database: {provider.db_path}",
        "",
        "By Category:",
    ]
    for category, count in sorted(stats.categories.items(), key=lambda x: x[1], reverse=True):
        lines.append(f"  {category}: {count}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_index(root: str | None = None, max_files: int | None = None) -> str:
    """Index a project directory: each text file becomes a 'project-index' memory.

    Args:
        root: Directory to index (default: current working directory)
        max_files: Maximum number of files to index (default 200)
    """
    root_path = Path(root).expanduser() if root else Path.cwd()
    if not root_path.is_dir():
        return f"Error: {root_path} is not a directory"

    provider = get_provider()
    max_files = max_files if max_files is not None else provider.config.index_max_files
    try:
        files = await asyncio.to_thread(lambda: list(iter_workspace_files(root_path, max_files)))
        result = await provider.index_workspace(files, root=root_path, max_files=max_files)
    except MemoryStoreError as e:
        return f"Error: {e}"
    return f"Indexed {result.indexed} files (skipped {result.skipped})."


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_capture(content: str, path: str | None = None) -> str:
    """Auto-capture hook: record a snapshot (e.g. of a saved file) if auto-capture is enabled.

    Args:
        content: Captured text
        path: Optional path of the file the text came from
    """
    if not content.strip():
        return "Error: content is required"
    try:
        entry = await get_provider().capture(content, path)
    except MemoryStoreError as e:
        return f"Error: {e}"
    if entry is None:
        return "Auto-capture is disabled"
    return f"Captured memory: {entry.id}"


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Run the MCP server with the store initialized up front."""
    provider = get_provider()
    await provider.ensure_initialized()
    log("Server ready")
    try:
        await mcp.run_stdio_async()
    finally:
        await provider.close()


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
