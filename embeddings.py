"""
Embedding providers for superlocalmemory.

Three interchangeable backends composed into one priority chain:
- Gemini (google-genai) when an API key is configured
- Ollama (local HTTP model server) when a base URL is configured
- sentence-transformers in-process model, always available (bge-small-en-v1.5, 384-dim)
"""

from __future__ import annotations

import asyncio
import enum
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Callable, Protocol

import numpy as np
import requests

from config import DEFAULT_LOCAL_MODEL, Config
from errors import EmbeddingError
from utils import log

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

# =============================================================================
# Provider Interface
# =============================================================================


class EmbeddingProvider(Protocol):
    """Capability shared by every backend."""

    name: str
    dimension: int

    async def embed(self, text: str) -> list[float]: ...


def _normalize(embedding: np.ndarray) -> list[float]:
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


def reconcile_dimension(embedding: list[float], dimension: int) -> list[float]:
    """Zero-pad the tail or truncate so the vector has exactly ``dimension`` entries.

    A padded tail contributes nothing to dot products, so scores against
    full-width vectors only reflect the shared prefix.
    """
    vector = np.asarray(embedding, dtype=np.float64)
    if len(vector) > dimension:
        vector = vector[:dimension]
    elif len(vector) < dimension:
        vector = np.concatenate([vector, np.zeros(dimension - len(vector))])
    return _normalize(vector)


# =============================================================================
# Gemini (remote, API key)
# =============================================================================


class GeminiEmbeddings:
    """Google Gemini embeddings, requested at the store's dimension."""

    name = "gemini"

    def __init__(self, api_key: str, model: str, dimension: int):
        self.model = model
        self.dimension = dimension
        self._api_key = api_key
        self._client: GenAIClient | None = None
        self._lock = threading.Lock()

    def _get_client(self) -> GenAIClient:
        if self._client is None:
            with self._lock:
                if self._client is None:  # Double-check after acquiring lock
                    from google import genai

                    self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _embed_sync(self, text: str) -> list[float]:
        from google.genai import types

        response = self._get_client().models.embed_content(
            model=self.model,
            contents=text,
            config=types.EmbedContentConfig(
                task_type="SEMANTIC_SIMILARITY", output_dimensionality=self.dimension
            ),
        )
        return _normalize(np.array(response.embeddings[0].values, dtype=np.float64))

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._embed_sync, text)


# =============================================================================
# Ollama (local HTTP)
# =============================================================================


class OllamaEmbeddings:
    """Embeddings from a locally hosted Ollama server.

    The model's native width may differ from the store's; the chain reconciles it.
    """

    name = "ollama"

    def __init__(self, base_url: str, model: str, dimension: int, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.dimension = dimension
        self.timeout = timeout

    def _embed_sync(self, text: str) -> list[float]:
        response = requests.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model, "prompt": text},
            timeout=self.timeout,
        )
        response.raise_for_status()
        embedding = response.json().get("embedding") or []
        if not embedding:
            raise EmbeddingError(f"Ollama returned no embedding for model {self.model}")
        return [float(v) for v in embedding]

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._embed_sync, text)


# =============================================================================
# Local in-process model (sentence-transformers)
# =============================================================================


class ModelState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


LOADER_WORKERS = 2
_loader_pool = ThreadPoolExecutor(
    max_workers=LOADER_WORKERS, thread_name_prefix="embedding-model-loader"
)


def _load_sentence_transformer(model_name: str) -> Any:
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name)


class LocalEmbeddings:
    """Zero-config in-process embeddings.

    The model loads on first use. Callers arriving while a load is in flight
    wait on the same future; a failed load moves to FAILED and the next call
    starts a fresh attempt.
    """

    name = "local"

    def __init__(
        self,
        model_name: str = DEFAULT_LOCAL_MODEL,
        dimension: int = 384,
        loader: Callable[[str], Any] = _load_sentence_transformer,
    ):
        self.model_name = model_name
        self.dimension = dimension
        self._loader = loader
        self._lock = threading.Lock()
        self._state = ModelState.UNINITIALIZED
        self._pending: Future | None = None
        self._model: Any = None

    @property
    def state(self) -> ModelState:
        return self._state

    def _load(self) -> Any:
        log(f"Loading local embedding model: {self.model_name}...")
        try:
            model = self._loader(self.model_name)
        except Exception as e:
            with self._lock:
                self._state = ModelState.FAILED
                self._pending = None
            log(f"Local embedding model failed to load: {e}", "ERROR")
            raise
        with self._lock:
            self._model = model
            self._state = ModelState.READY
            self._pending = None
        log(f"Model {self.model_name} loaded ({self.dimension}-dim)")
        return model

    async def _ensure_model(self) -> Any:
        with self._lock:
            if self._state is ModelState.READY:
                return self._model
            if self._pending is not None and self._pending.cancelled():
                self._pending = None
                self._state = ModelState.FAILED
            if self._pending is None:
                if self._state is ModelState.FAILED:
                    log(f"Retrying load of {self.model_name}", "WARN")
                self._state = ModelState.INITIALIZING
                self._pending = _loader_pool.submit(self._load)
            pending = self._pending
        # Cancelling one waiter must not cancel the load the others share
        return await asyncio.shield(asyncio.wrap_future(pending))

    async def embed(self, text: str) -> list[float]:
        model = await self._ensure_model()
        output = await asyncio.to_thread(model.encode, text, normalize_embeddings=True)
        embedding = np.asarray(output, dtype=np.float64).ravel()
        if len(embedding) != self.dimension:
            raise EmbeddingError(
                f"Expected {self.dimension}-dim embedding, got {len(embedding)}-dim"
            )
        return embedding.tolist()


_lock = threading.Lock()
_local_providers: dict[tuple[str, int], LocalEmbeddings] = {}


def get_local_embeddings(model_name: str, dimension: int) -> LocalEmbeddings:
    """Process-wide LocalEmbeddings per model so the model is loaded at most once."""
    key = (model_name, dimension)
    with _lock:
        if key not in _local_providers:
            _local_providers[key] = LocalEmbeddings(model_name, dimension)
        return _local_providers[key]


# =============================================================================
# Fallback Chain
# =============================================================================


class EmbeddingChain:
    """Priority chain: primary -> secondary -> always-on default.

    Failures of the optional tiers are logged and fall through; only a failure
    of the default raises EmbeddingError.
    """

    def __init__(
        self,
        dimension: int,
        default: EmbeddingProvider,
        primary: EmbeddingProvider | None = None,
        secondary: EmbeddingProvider | None = None,
    ):
        self.dimension = dimension
        self.primary = primary
        self.secondary = secondary
        self.default = default
        self._mismatch_warned = False

    @property
    def providers(self) -> list[EmbeddingProvider]:
        return [p for p in (self.primary, self.secondary, self.default) if p is not None]

    def _reconcile(self, embedding: list[float], provider: EmbeddingProvider) -> list[float]:
        if len(embedding) != self.dimension and not self._mismatch_warned:
            self._mismatch_warned = True
            action = "zero-padding" if len(embedding) < self.dimension else "truncating"
            log(
                f"{provider.name} returned {len(embedding)}-dim vectors, store uses "
                f"{self.dimension}-dim; {action} (similarity only reflects the shared prefix)",
                "WARN",
            )
        return reconcile_dimension(embedding, self.dimension)

    async def embed(self, text: str) -> list[float]:
        if self.primary is not None:
            try:
                return await self.primary.embed(text)
            except Exception as e:
                log(f"Primary provider ({self.primary.name}) failed, falling back: {e}", "WARN")

        if self.secondary is not None:
            try:
                embedding = await self.secondary.embed(text)
                return self._reconcile(embedding, self.secondary)
            except Exception as e:
                log(f"Fallback provider ({self.secondary.name}) failed, using default: {e}", "WARN")

        try:
            return await self.default.embed(text)
        except Exception as e:
            raise EmbeddingError(f"All embedding providers failed. Last error: {e}") from e


def build_embedding_chain(config: Config) -> EmbeddingChain:
    """Select and order providers from configuration."""
    primary = None
    secondary = None
    if config.google_api_key:
        primary = GeminiEmbeddings(
            config.google_api_key, config.google_embedding_model, config.embedding_dim
        )
        log(f"Using Gemini embeddings ({config.google_embedding_model})")
    if config.ollama_base_url:
        secondary = OllamaEmbeddings(
            config.ollama_base_url, config.ollama_model, config.embedding_dim,
            timeout=config.request_timeout,
        )
        log(f"Using Ollama embeddings ({config.ollama_model} at {config.ollama_base_url})")

    default = get_local_embeddings(config.local_model, config.embedding_dim)
    log(f"Zero-config local embeddings available ({config.local_model}, {config.embedding_dim}-dim)")
    return EmbeddingChain(config.embedding_dim, default, primary=primary, secondary=secondary)
