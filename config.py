"""Configuration for superlocalmemory, resolved from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".superlocalmemory" / "memory.db"
SECRETS_PATH = Path.home() / ".secrets" / "GOOGLE_API_KEY"
DEFAULT_GOOGLE_MODEL = "gemini-embedding-001"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"
DEFAULT_LOCAL_MODEL = "BAAI/bge-small-en-v1.5"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def _get_api_key(env: Mapping[str, str]) -> str | None:
    """Get API key from environment or secrets file."""
    key = env.get("GOOGLE_API_KEY") or env.get("GEMINI_API_KEY")
    if key:
        return key
    if SECRETS_PATH.exists():
        return SECRETS_PATH.read_text().strip() or None
    return None


@dataclass(frozen=True, slots=True)
class Config:
    """Store configuration with sensible defaults."""

    db_path: Path | None = None  # None -> DEFAULT_DB_PATH
    embedding_dim: int = 384  # bge-small-en-v1.5
    google_api_key: str | None = None
    google_embedding_model: str = DEFAULT_GOOGLE_MODEL
    ollama_base_url: str | None = None  # None -> Ollama tier disabled
    ollama_model: str = DEFAULT_OLLAMA_MODEL
    local_model: str = DEFAULT_LOCAL_MODEL
    request_timeout: float = 30.0
    auto_capture: bool = True
    max_recall_results: int = 5
    max_limit: int = 50
    min_score: float = 0.3
    dedup_threshold: float = 0.95
    forget_threshold: float = 0.85
    index_max_files: int = 200
    index_max_chars: int = 4000
    capture_max_chars: int = 1500

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Config:
        """Build a Config from environment variables, falling back to defaults."""
        env = os.environ if env is None else env
        db_path = env.get("SUPERLOCALMEMORY_DB_PATH", "").strip()
        return cls(
            db_path=Path(db_path).expanduser() if db_path else None,
            embedding_dim=int(env.get("EMBEDDING_DIM", "384")),
            google_api_key=_get_api_key(env),
            google_embedding_model=env.get("GOOGLE_EMBEDDING_MODEL", DEFAULT_GOOGLE_MODEL),
            ollama_base_url=env.get("OLLAMA_BASE_URL") or None,
            ollama_model=env.get("OLLAMA_EMBEDDING_MODEL", DEFAULT_OLLAMA_MODEL),
            local_model=env.get("LOCAL_EMBEDDING_MODEL", DEFAULT_LOCAL_MODEL),
            auto_capture=env.get("SUPERLOCALMEMORY_AUTO_CAPTURE", "true").lower() in _TRUE_VALUES,
            max_recall_results=int(env.get("SUPERLOCALMEMORY_MAX_RESULTS", "5")),
        )

    def resolve_db_path(self) -> Path:
        """Explicit db_path if configured, else the default under the home directory."""
        return self.db_path if self.db_path is not None else DEFAULT_DB_PATH
