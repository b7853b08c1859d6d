"""Tests for embedding backends and the fallback chain (no network, no real model)."""

import asyncio
import threading
import time
from concurrent.futures import Future
from types import SimpleNamespace

import numpy as np
import pytest
import requests

import embeddings as embeddings_module
from config import Config
from conftest import DIM, StubEmbeddings, vec
from embeddings import (
    EmbeddingChain,
    GeminiEmbeddings,
    LocalEmbeddings,
    ModelState,
    OllamaEmbeddings,
    build_embedding_chain,
    get_local_embeddings,
    reconcile_dimension,
)
from errors import EmbeddingError


class FakeModel:
    def __init__(self, dimension: int = DIM):
        self.dimension = dimension
        self.encoded: list[str] = []

    def encode(self, text, normalize_embeddings=False):
        self.encoded.append(text)
        out = np.zeros(self.dimension, dtype=np.float32)
        out[len(text) % self.dimension] = 1.0
        return out


class CountingLoader:
    """Model loader that records calls and can be told to fail or stall."""

    def __init__(self, dimension: int = DIM, delay: float = 0.0, failures: int = 0):
        self.dimension = dimension
        self.delay = delay
        self.failures = failures
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, model_name: str):
        with self._lock:
            self.calls += 1
            attempt = self.calls
        time.sleep(self.delay)
        if attempt <= self.failures:
            raise RuntimeError(f"download of {model_name} failed")
        return FakeModel(self.dimension)


# =============================================================================
# Dimension Reconciliation
# =============================================================================


class TestReconcileDimension:
    def test_pads_short_vectors(self):
        out = reconcile_dimension([3.0, 4.0], 4)
        assert out == pytest.approx([0.6, 0.8, 0.0, 0.0])

    def test_truncates_long_vectors(self):
        out = reconcile_dimension([1.0, 0.0, 9.0, 9.0], 2)
        assert out == pytest.approx([1.0, 0.0])

    def test_exact_width_is_normalized(self):
        out = reconcile_dimension([2.0, 0.0, 0.0], 3)
        assert out == pytest.approx([1.0, 0.0, 0.0])

    def test_zero_vector_stays_zero(self):
        assert reconcile_dimension([0.0], 3) == [0.0, 0.0, 0.0]


# =============================================================================
# Local Model Lifecycle
# =============================================================================


class TestLocalEmbeddings:
    async def test_lazy_load_on_first_embed(self):
        loader = CountingLoader()
        local = LocalEmbeddings("test-model", DIM, loader=loader)
        assert local.state is ModelState.UNINITIALIZED
        assert loader.calls == 0

        embedding = await local.embed("hello")
        assert len(embedding) == DIM
        assert local.state is ModelState.READY
        assert loader.calls == 1

    async def test_concurrent_first_calls_share_one_load(self):
        loader = CountingLoader(delay=0.2)
        local = LocalEmbeddings("test-model", DIM, loader=loader)

        results = await asyncio.gather(*(local.embed(f"text {i}") for i in range(5)))
        assert len(results) == 5
        assert all(len(r) == DIM for r in results)
        assert loader.calls == 1

    async def test_state_is_initializing_during_load(self):
        loader = CountingLoader(delay=0.2)
        local = LocalEmbeddings("test-model", DIM, loader=loader)

        task = asyncio.create_task(local.embed("hello"))
        await asyncio.sleep(0.05)
        assert local.state is ModelState.INITIALIZING
        await task
        assert local.state is ModelState.READY

    async def test_failed_load_is_retried(self):
        loader = CountingLoader(failures=1)
        local = LocalEmbeddings("test-model", DIM, loader=loader)

        with pytest.raises(RuntimeError, match="download of test-model failed"):
            await local.embed("first")
        assert local.state is ModelState.FAILED

        embedding = await local.embed("second")
        assert len(embedding) == DIM
        assert local.state is ModelState.READY
        assert loader.calls == 2

    async def test_concurrent_waiters_share_failure(self):
        loader = CountingLoader(delay=0.2, failures=1)
        local = LocalEmbeddings("test-model", DIM, loader=loader)

        results = await asyncio.gather(
            *(local.embed(f"text {i}") for i in range(3)), return_exceptions=True
        )
        assert all(isinstance(r, RuntimeError) for r in results)
        assert loader.calls == 1
        assert local.state is ModelState.FAILED

    async def test_cancelled_waiter_does_not_cancel_queued_load(self):
        release = threading.Event()
        blockers = [
            embeddings_module._loader_pool.submit(release.wait, 5)
            for _ in range(embeddings_module.LOADER_WORKERS)
        ]
        loader = CountingLoader()
        local = LocalEmbeddings("test-model", DIM, loader=loader)
        try:
            task = asyncio.create_task(local.embed("first"))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()
            for blocker in blockers:
                await asyncio.wrap_future(blocker)

        embedding = await local.embed("second")
        assert len(embedding) == DIM
        assert local.state is ModelState.READY
        assert loader.calls == 1

    async def test_cancelled_waiter_leaves_others_waiting(self):
        loader = CountingLoader(delay=0.2)
        local = LocalEmbeddings("test-model", DIM, loader=loader)

        cancelled = asyncio.create_task(local.embed("gone"))
        survivor = asyncio.create_task(local.embed("kept"))
        await asyncio.sleep(0.05)
        cancelled.cancel()

        assert len(await survivor) == DIM
        assert cancelled.cancelled()
        assert loader.calls == 1

    async def test_cancelled_pending_load_is_restarted(self):
        loader = CountingLoader()
        local = LocalEmbeddings("test-model", DIM, loader=loader)
        stale = Future()
        stale.cancel()
        local._pending = stale
        local._state = ModelState.INITIALIZING

        assert len(await local.embed("hello")) == DIM
        assert local.state is ModelState.READY
        assert loader.calls == 1

    async def test_unexpected_model_width_raises(self):
        local = LocalEmbeddings("test-model", DIM, loader=CountingLoader(dimension=DIM // 2))
        with pytest.raises(EmbeddingError, match=f"Expected {DIM}-dim"):
            await local.embed("hello")

    def test_shared_instance_per_model(self):
        a = get_local_embeddings("shared-model", DIM)
        b = get_local_embeddings("shared-model", DIM)
        c = get_local_embeddings("shared-model", DIM * 2)
        assert a is b
        assert a is not c


# =============================================================================
# Remote Backends
# =============================================================================


class FakeResponse:
    def __init__(self, payload, status: int = 200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


class TestOllamaEmbeddings:
    async def test_posts_model_and_prompt(self, monkeypatch):
        captured = {}

        def fake_post(url, json=None, timeout=None):
            captured.update(url=url, json=json, timeout=timeout)
            return FakeResponse({"embedding": [1, 2, 3]})

        monkeypatch.setattr(embeddings_module.requests, "post", fake_post)
        ollama = OllamaEmbeddings("http://localhost:11434/", "nomic-embed-text", DIM, timeout=5.0)

        assert await ollama.embed("hello") == [1.0, 2.0, 3.0]
        assert captured["url"] == "http://localhost:11434/api/embeddings"
        assert captured["json"] == {"model": "nomic-embed-text", "prompt": "hello"}
        assert captured["timeout"] == 5.0

    async def test_empty_embedding_raises(self, monkeypatch):
        monkeypatch.setattr(
            embeddings_module.requests, "post", lambda *a, **kw: FakeResponse({"embedding": []})
        )
        with pytest.raises(EmbeddingError):
            await OllamaEmbeddings("http://ollama", "m", DIM).embed("hello")

    async def test_http_error_propagates(self, monkeypatch):
        monkeypatch.setattr(
            embeddings_module.requests, "post", lambda *a, **kw: FakeResponse({}, status=500)
        )
        with pytest.raises(requests.HTTPError):
            await OllamaEmbeddings("http://ollama", "m", DIM).embed("hello")


class TestGeminiEmbeddings:
    async def test_requests_store_dimension_and_normalizes(self):
        calls = []

        def embed_content(model, contents, config):
            calls.append((model, contents, config))
            return SimpleNamespace(embeddings=[SimpleNamespace(values=[3.0, 4.0])])

        gemini = GeminiEmbeddings("key", "gemini-embedding-001", DIM)
        gemini._client = SimpleNamespace(models=SimpleNamespace(embed_content=embed_content))

        assert await gemini.embed("hello") == pytest.approx([0.6, 0.8])
        model, contents, config = calls[0]
        assert (model, contents) == ("gemini-embedding-001", "hello")
        assert config.output_dimensionality == DIM
        assert config.task_type == "SEMANTIC_SIMILARITY"


# =============================================================================
# Fallback Chain
# =============================================================================


class TestEmbeddingChain:
    async def test_primary_wins(self):
        primary = StubEmbeddings({"q": vec(1.0)}, name="primary")
        secondary = StubEmbeddings(name="secondary")
        default = StubEmbeddings(name="default")
        chain = EmbeddingChain(DIM, default, primary=primary, secondary=secondary)

        assert await chain.embed("q") == vec(1.0)
        assert secondary.calls == [] and default.calls == []

    async def test_secondary_output_is_padded(self):
        primary = StubEmbeddings(fail=True, name="primary")
        secondary = StubEmbeddings({"q": [0.0, 2.0]}, dimension=2, name="secondary")
        default = StubEmbeddings(name="default")
        chain = EmbeddingChain(DIM, default, primary=primary, secondary=secondary)

        out = await chain.embed("q")
        assert len(out) == DIM
        assert out == pytest.approx(vec(0.0, 1.0))
        assert default.calls == []

    async def test_secondary_output_is_truncated(self):
        wide = [1.0] + [0.0] * (DIM - 1) + [7.0] * 8
        secondary = StubEmbeddings({"q": wide}, dimension=DIM + 8, name="secondary")
        chain = EmbeddingChain(DIM, StubEmbeddings(name="default"), secondary=secondary)

        assert await chain.embed("q") == pytest.approx(vec(1.0))

    async def test_falls_through_to_default(self):
        default = StubEmbeddings({"q": vec(0.0, 0.0, 1.0)}, name="default")
        chain = EmbeddingChain(
            DIM,
            default,
            primary=StubEmbeddings(fail=True, name="primary"),
            secondary=StubEmbeddings(fail=True, name="secondary"),
        )
        assert await chain.embed("q") == vec(0.0, 0.0, 1.0)
        assert default.calls == ["q"]

    async def test_default_failure_raises_embedding_error(self):
        chain = EmbeddingChain(
            DIM,
            StubEmbeddings(fail=True, name="default"),
            primary=StubEmbeddings(fail=True, name="primary"),
        )
        with pytest.raises(EmbeddingError, match="All embedding providers failed"):
            await chain.embed("q")

    def test_providers_in_priority_order(self):
        default = StubEmbeddings(name="default")
        secondary = StubEmbeddings(name="secondary")
        chain = EmbeddingChain(DIM, default, secondary=secondary)
        assert [p.name for p in chain.providers] == ["secondary", "default"]


class TestBuildEmbeddingChain:
    def test_zero_config_uses_local_only(self):
        chain = build_embedding_chain(Config())
        assert chain.primary is None
        assert chain.secondary is None
        assert isinstance(chain.default, LocalEmbeddings)
        assert chain.default.state is ModelState.UNINITIALIZED
        assert chain.dimension == 384

    def test_all_tiers_configured(self):
        chain = build_embedding_chain(
            Config(google_api_key="key", ollama_base_url="http://localhost:11434", embedding_dim=768)
        )
        assert isinstance(chain.primary, GeminiEmbeddings)
        assert isinstance(chain.secondary, OllamaEmbeddings)
        assert chain.primary.dimension == 768
        assert chain.default.dimension == 768
