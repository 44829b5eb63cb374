"""Shared test fixtures."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import pytest

from shared_memory.config import MemoryConfig
from shared_memory.index_adapter import SimilarityIndex
from shared_memory.memory_manager import MemoryManager

class FakeEmbedding:
    """Embedding function whose vectors are tokens the fake collection can decode."""

    def __init__(self):
        self.texts: list[str] = []

    def __call__(self, input: list[str]) -> list[list[float]]:
        vectors = []
        for text in input:
            self.texts.append(text)
            vectors.append([float(len(self.texts) - 1)])
        return vectors

    def decode(self, vector: list[float]) -> str:
        return self.texts[int(vector[0])]


class SlowEmbedding(FakeEmbedding):
    """Blocks the calling thread, like a CPU-bound model."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def __call__(self, input: list[str]) -> list[list[float]]:
        time.sleep(self.delay)
        return super().__call__(input)


class FakeCollection:
    """In-memory stand-in for a Chroma async collection."""

    def __init__(self, name: str, embedding_function: Any = None):
        self.name = name
        self.embedding_function = embedding_function
        self.rows: dict[str, tuple[str, dict]] = {}
        self.embeddings: dict[str, list[float]] = {}
        self.fail_upsert = False
        self.fail_query = False
        self.queries: list[dict] = []

    async def upsert(self, ids, embeddings, documents, metadatas):
        if self.fail_upsert:
            raise ConnectionError("chroma went away")
        for record_id, embedding, doc, meta in zip(ids, embeddings, documents, metadatas):
            self.rows[record_id] = (doc, meta)
            self.embeddings[record_id] = embedding

    async def query(self, query_embeddings, n_results, where=None):
        text = self.embedding_function.decode(query_embeddings[0]).lower()
        self.queries.append({"text": text, "n_results": n_results, "where": where})
        if self.fail_query:
            raise ConnectionError("chroma went away")
        hits = []
        for record_id, (doc, meta) in self.rows.items():
            if not _where_matches(where, meta):
                continue
            distance = 0.1 if text and text in doc.lower() else 0.9
            hits.append((distance, record_id, doc, meta))
        hits.sort(key=lambda h: h[0])
        hits = hits[:n_results]
        return {
            "ids": [[h[1] for h in hits]],
            "documents": [[h[2] for h in hits]],
            "metadatas": [[h[3] for h in hits]],
            "distances": [[h[0] for h in hits]],
        }


def _where_matches(where: dict | None, meta: dict) -> bool:
    if not where:
        return True
    if "$and" in where:
        return all(_where_matches(clause, meta) for clause in where["$and"])
    return all(meta.get(key) == value for key, value in where.items())


class FakeChromaClient:
    def __init__(self):
        self.collections: dict[str, FakeCollection] = {}

    async def get_or_create_collection(self, name, embedding_function=None):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name, embedding_function)
        return self.collections[name]


class FakeClientFactory:
    """Async client factory that can be told to fail a number of times."""

    def __init__(self, client: FakeChromaClient, failures: int = 0):
        self.client = client
        self.failures = failures
        self.calls = 0

    async def __call__(self, config: MemoryConfig) -> FakeChromaClient:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("connection refused")
        return self.client


@pytest.fixture
def memory_dir(tmp_path: Path) -> Path:
    return tmp_path / "memory"


@pytest.fixture
def json_config(memory_dir: Path) -> MemoryConfig:
    return MemoryConfig(memory_dir=memory_dir, domain="openshift", backend="json")


@pytest.fixture
def chroma_config(memory_dir: Path) -> MemoryConfig:
    return MemoryConfig(
        memory_dir=memory_dir,
        domain="openshift",
        namespace="team1",
        backend="chroma",
        embedding_function=FakeEmbedding(),
        backend_timeout=1.0,
    )


@pytest.fixture
def chroma_client() -> FakeChromaClient:
    return FakeChromaClient()


@pytest.fixture
def client_factory(chroma_client: FakeChromaClient) -> FakeClientFactory:
    return FakeClientFactory(chroma_client)


@pytest.fixture
def json_manager(json_config: MemoryConfig) -> MemoryManager:
    return MemoryManager(json_config)


@pytest.fixture
def vector_manager(chroma_config: MemoryConfig, client_factory: FakeClientFactory) -> MemoryManager:
    return MemoryManager(chroma_config, index=SimilarityIndex(chroma_config, client_factory))


def log_files(directory: Path, category: str | None = None) -> list[Path]:
    if not directory.exists():
        return []
    prefix = f"{category}_" if category else ""
    return sorted(p for p in directory.glob(f"{prefix}*.json"))
