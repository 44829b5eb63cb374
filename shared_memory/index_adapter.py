"""
Similarity Index - ChromaDB-backed vector search over stored records.

Talks to a Chroma server through the async HTTP client. Two collections
per namespace: `conversations_<namespace>` and `operational_<namespace>`.
Every failure surfaces as BackendUnavailable so the manager can degrade
to fallback search instead of failing the caller.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .config import MemoryConfig
from .errors import BackendUnavailable
from .models import RecordKind, SearchResult

logger = logging.getLogger(__name__)

# Chroma metadata values must be scalars, so these travel as JSON strings.
LIST_FIELDS = ("tags", "context", "affectedResources")

ClientFactory = Callable[[MemoryConfig], Awaitable[Any]]


async def connect_chroma(config: MemoryConfig) -> Any:
    """Open an async HTTP client to the configured Chroma server."""
    try:
        import chromadb
    except ImportError:
        raise ImportError(
            "chromadb required for the vector backend. "
            "Install with: pip install chromadb"
        )
    return await chromadb.AsyncHttpClient(host=config.chroma_host, port=config.chroma_port)


def build_embedding_function(config: MemoryConfig) -> Any:
    """Pick the embedding function: explicit, named sentence-transformers model, or Chroma's default."""
    if config.embedding_function is not None:
        return config.embedding_function

    from chromadb.utils import embedding_functions

    if config.embedding_model:
        return embedding_functions.SentenceTransformerEmbeddingFunction(
            model_name=config.embedding_model
        )
    return embedding_functions.DefaultEmbeddingFunction()


def encode_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    encoded = {}
    for key, value in metadata.items():
        if value is None:
            continue
        encoded[key] = json.dumps(value) if key in LIST_FIELDS else value
    return encoded


def decode_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    decoded = dict(metadata or {})
    for key in LIST_FIELDS:
        value = decoded.get(key)
        if isinstance(value, str):
            try:
                decoded[key] = json.loads(value)
            except ValueError:
                decoded[key] = [value]
    return decoded


class SimilarityIndex:
    """
    Adapter over the two Chroma collections.

    `connect()` provisions both collections; until it succeeds the index
    reports itself as not connected and every call raises BackendUnavailable.
    """

    def __init__(
        self,
        config: MemoryConfig,
        client_factory: ClientFactory | None = None,
    ):
        self._config = config
        self._client_factory = client_factory or connect_chroma
        self._client: Any = None
        self._embedding_function: Any = None
        self._collections: dict[RecordKind, Any] = {}

    @property
    def connected(self) -> bool:
        return len(self._collections) == 2

    async def connect(self) -> None:
        """Create the client and get-or-create both collections."""
        self.reset()
        client = await self._call("connect", self._client_factory, self._config)
        try:
            embedding_function = build_embedding_function(self._config)
        except Exception as e:
            raise BackendUnavailable(f"embedding function setup failed: {e}") from e

        collections = {}
        for kind, name in (
            ("conversation", self._config.conversation_collection),
            ("operational", self._config.operational_collection),
        ):
            collections[kind] = await self._call(
                f"get_or_create_collection({name})",
                client.get_or_create_collection,
                name=name,
                embedding_function=embedding_function,
            )

        self._client = client
        self._embedding_function = embedding_function
        self._collections = collections

    def reset(self) -> None:
        """Forget the client and collections; the next use needs connect()."""
        self._client = None
        self._embedding_function = None
        self._collections = {}

    async def add(
        self,
        kind: RecordKind,
        record_id: str,
        document: str,
        metadata: dict[str, Any],
    ) -> None:
        """Index a document. Re-adding an existing id overwrites it."""
        collection = self._collection(kind)
        embeddings = await self._embed([document])
        await self._call(
            f"upsert into {kind}",
            collection.upsert,
            ids=[record_id],
            embeddings=embeddings,
            documents=[document],
            metadatas=[encode_metadata(metadata)],
        )

    async def query(
        self,
        kind: RecordKind,
        text: str,
        limit: int,
        where: dict[str, Any] | None = None,
    ) -> list[SearchResult]:
        """
        Nearest-neighbour search.

        Args:
            kind: Which collection to search
            text: Query text, embedded with the configured embedding function
            limit: Max results
            where: Exact-match metadata filter in Chroma `where` syntax

        Returns:
            Results ordered by ascending distance
        """
        collection = self._collection(kind)
        embeddings = await self._embed([text])
        kwargs: dict[str, Any] = {"query_embeddings": embeddings, "n_results": limit}
        if where:
            kwargs["where"] = where
        raw = await self._call(f"query {kind}", collection.query, **kwargs)
        return self._format_results(raw, kind)

    def _collection(self, kind: RecordKind) -> Any:
        collection = self._collections.get(kind)
        if collection is None:
            raise BackendUnavailable(f"{kind} collection not provisioned")
        return collection

    async def _embed(self, texts: list[str]) -> Any:
        # Embedding is local model work (and a model download on first use);
        # it runs in a worker thread and is not bounded by backend_timeout.
        try:
            return await asyncio.to_thread(self._embedding_function, texts)
        except Exception as e:
            raise BackendUnavailable(f"embedding failed: {e}") from e

    async def _call(self, action: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=self._config.backend_timeout)
        except asyncio.TimeoutError as e:
            raise BackendUnavailable(
                f"{action} timed out after {self._config.backend_timeout}s"
            ) from e
        except Exception as e:
            raise BackendUnavailable(f"{action} failed: {e}") from e

    @staticmethod
    def _format_results(raw: Any, kind: RecordKind) -> list[SearchResult]:
        documents = (raw or {}).get("documents") or []
        if not documents or not documents[0]:
            return []

        metadatas = (raw.get("metadatas") or [[]])[0] or []
        distances = (raw.get("distances") or [[]])[0] or []

        results = []
        for i, doc in enumerate(documents[0]):
            metadata = metadatas[i] if i < len(metadatas) else {}
            distance = distances[i] if i < len(distances) else 0.0
            results.append(
                SearchResult(
                    content=doc or "",
                    metadata=decode_metadata(metadata),
                    # cosine distances can dip just below zero from rounding
                    distance=max(0.0, float(distance)),
                    kind=kind,
                )
            )
        return results
