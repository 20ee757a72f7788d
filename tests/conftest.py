"""Shared fixtures for memory graph tests."""

from __future__ import annotations

import hashlib
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

from memory_graph import metrics
from memory_graph.config import Config
from memory_graph.disambiguation import DisambiguationResolver
from memory_graph.embeddings import EmbeddingError
from memory_graph.entities import EntityStore, KnowledgeGraph
from memory_graph.extraction import EntityExtractor
from memory_graph.graph import GraphQueryEngine
from memory_graph.llm import CompletionError
from memory_graph.storage import MemoryStorage


# ---------------------------------------------------------------------------
# Ensure no real API calls leak out
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch):
    """Set a dummy API key so tests never fail on missing key."""
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-key-for-pytest")
    monkeypatch.delenv("MEMORY_GRAPH_CONFIG", raising=False)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


# ---------------------------------------------------------------------------
# Config + storage fixtures (temporary DB)
# ---------------------------------------------------------------------------

@pytest.fixture
def cfg(tmp_path):
    """Default tunables, pointed at a temp database."""
    return Config(
        openrouter_api_key="test-key-for-pytest",
        embedding_dimensions=4,
        db_path=str(tmp_path / "test.sqlite"),
    )


@pytest.fixture
def tmp_storage(cfg):
    """Create a fresh MemoryStorage backed by a temp SQLite file (4-dim vectors)."""
    s = MemoryStorage(db_path=cfg.db_path, dimensions=4)
    yield s
    s.close()


@pytest.fixture
def add_memory(tmp_storage):
    """``add_memory(text, **kw) -> id`` shortcut."""
    def _add(text: str, **kwargs: Any) -> str:
        return tmp_storage.store_memory(text, **kwargs)
    return _add


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeEmbedder:
    """Deterministic mock embedder.

    Texts listed in *vectors* get that exact vector; anything else gets a
    unit vector derived from an md5 of the text, so identical texts always
    produce the same vector.
    """

    def __init__(self, dimensions: int = 4, vectors: Optional[Dict[str, List[float]]] = None):
        self.dimensions = dimensions
        self.vectors = dict(vectors or {})
        self.call_count = 0
        self.fail = False

    async def embed(self, text: str) -> List[float]:
        self.call_count += 1
        self._maybe_fail()
        return self._vector(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.call_count += 1
        self._maybe_fail()
        return [self._vector(t) for t in texts]

    def _maybe_fail(self) -> None:
        if self.fail:
            raise EmbeddingError("embedding service unavailable")

    def _vector(self, text: str) -> List[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.md5(text.encode("utf-8")).digest()
        vec = [digest[i] / 255.0 + 0.01 for i in range(self.dimensions)]
        mag = max(sum(v * v for v in vec) ** 0.5, 1e-9)
        return [v / mag for v in vec]


Reply = Union[str, Exception, Callable[[List[Dict[str, str]]], str]]


class FakeCompleter:
    """Scripted completion client.

    Each call consumes the next reply: a string is returned, an exception is
    raised, a callable is invoked with the messages. The last reply repeats.
    """

    def __init__(self, replies: Sequence[Reply] = ("[]",)):
        self.replies = list(replies)
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, temperature: float = 0.2, max_tokens: int = 1000) -> str:
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        reply = self.replies[min(len(self.calls) - 1, len(self.replies) - 1)]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply

    @property
    def call_count(self) -> int:
        return len(self.calls)


@pytest.fixture
def fake_embedder():
    """Return a FakeEmbedder with 4 dimensions."""
    return FakeEmbedder(dimensions=4)


@pytest.fixture
def failing_completer():
    return FakeCompleter([CompletionError("provider down")])


# ---------------------------------------------------------------------------
# Extractor / entity store / knowledge graph / queries
# ---------------------------------------------------------------------------

@pytest.fixture
def extractor(cfg):
    return EntityExtractor(config=cfg)


@pytest.fixture
def entity_store(tmp_storage, cfg):
    return EntityStore(tmp_storage, resolver=DisambiguationResolver(config=cfg), config=cfg)


@pytest.fixture
def knowledge_graph(tmp_storage, extractor, entity_store, cfg):
    return KnowledgeGraph(tmp_storage, extractor=extractor, entity_store=entity_store, config=cfg)


@pytest.fixture
def graph_engine(tmp_storage, cfg):
    return GraphQueryEngine(tmp_storage, cfg)
