"""Shared utility functions for superlocalmemory."""

from __future__ import annotations

import fnmatch
import os
import re
import sys
import time
from collections.abc import Iterator
from pathlib import Path

LOG_PREFIX = "[superlocalmemory]"

MEMORY_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

TRUNCATION_MARKER = "\n…(truncated)"

# Directories never descended into during workspace indexing
EXCLUDED_DIRS = frozenset(
    {"node_modules", ".git", "dist", "build", ".next", "out", ".venv", "__pycache__"}
)
EXCLUDED_FILE_PATTERNS = (
    "*.lock", "*.png", "*.jpg", "*.jpeg", "*.gif", "*.webp",
    "*.zip", "*.tar", "*.gz", "*.bin", "*.exe",
)


def log(message: str, level: str = "INFO") -> None:
    """Log to stderr (stdout is reserved for the MCP stdio transport)."""
    if level == "INFO":
        print(f"{LOG_PREFIX} {message}", file=sys.stderr)
    else:
        print(f"{LOG_PREFIX} {level}: {message}", file=sys.stderr)


def now_ms() -> int:
    """Current time as milliseconds since the epoch."""
    return int(time.time() * 1000)


def is_valid_memory_id(memory_id: str) -> bool:
    return isinstance(memory_id, str) and MEMORY_ID_RE.match(memory_id) is not None


def truncate_text(text: str, max_chars: int) -> str:
    """Cut text to max_chars, appending a marker when anything was dropped."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def iter_workspace_files(root: Path, max_files: int = 200) -> Iterator[Path]:
    """Yield candidate files under root, skipping build output, VCS data and binaries.

    Examples:
        root/src/app.py          -> yielded
        root/node_modules/x.js   -> skipped (excluded directory)
        root/logo.png            -> skipped (excluded pattern)
    """
    count = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRS)
        for name in sorted(filenames):
            if any(fnmatch.fnmatch(name, pattern) for pattern in EXCLUDED_FILE_PATTERNS):
                continue
            yield Path(dirpath) / name
            count += 1
            if count >= max_files:
                return
