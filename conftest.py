"""Shared fixtures: isolated databases and deterministic embedding stubs."""

from __future__ import annotations

import hashlib
import math

import pytest

import config as config_module
from embeddings import EmbeddingChain
from store import MemoryStore

DIM = 64


def hash_vector(text: str, dim: int = DIM) -> list[float]:
    """Deterministic pseudo-embedding; unrelated texts land far apart."""
    digest = hashlib.shake_256(text.encode()).digest(dim)
    return [(b - 127.5) / 127.5 for b in digest]


def vec(*values: float, dim: int = DIM) -> list[float]:
    """Explicit leading components, zero-padded to dim."""
    return list(values) + [0.0] * (dim - len(values))


def unit_at(angle_cos: float, dim: int = DIM) -> list[float]:
    """Unit vector whose cosine with vec(1) is angle_cos."""
    return vec(angle_cos, math.sqrt(1 - angle_cos**2), dim=dim)


class StubEmbeddings:
    """Embedding backend returning fixed vectors for known texts."""

    def __init__(self, vectors=None, dimension: int = DIM, fail: bool = False, name: str = "stub"):
        self.name = name
        self.vectors = dict(vectors or {})
        self.dimension = dimension
        self.fail = fail
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError(f"{self.name} backend down")
        if text in self.vectors:
            return list(self.vectors[text])
        return hash_vector(text, self.dimension)


@pytest.fixture(autouse=True)
def no_secrets_file(tmp_path, monkeypatch):
    """Never pick up a real ~/.secrets API key during tests."""
    monkeypatch.setattr(config_module, "SECRETS_PATH", tmp_path / "no-secrets" / "GOOGLE_API_KEY")


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "memory" / "memory.db"


@pytest.fixture
async def store(db_path):
    memory_store = await MemoryStore(db_path, dimension=DIM).open()
    yield memory_store
    await memory_store.close()


@pytest.fixture
def stub_embeddings():
    return StubEmbeddings()


@pytest.fixture
def chain(stub_embeddings):
    return EmbeddingChain(DIM, stub_embeddings)
