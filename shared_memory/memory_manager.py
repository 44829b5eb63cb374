"""
Memory Manager - Dual-Backend Persistent Memory for MCP Servers

Every record is written to a durable JSON log first, then indexed in
ChromaDB when the vector backend is reachable:
- ChromaDB: similarity search (default)
- JSON log + substring match: fallback when ChromaDB is down or disabled

Usage:
    from shared_memory import MemoryConfig, MemoryManager

    memory = MemoryManager(MemoryConfig(domain="openshift", memory_dir=Path("data/memory")))
    await memory.initialize()
    await memory.store_conversation({"sessionId": "s1", "userMessage": "...", "assistantResponse": "..."})
    results = await memory.search_conversations("pod crash")
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError

from .config import MemoryConfig
from .errors import BackendUnavailable, PersistenceError, ValidationError
from .extractors import extract_context, extract_tags
from .fallback import FallbackSearch
from .index_adapter import SimilarityIndex
from .log_writer import CONVERSATIONS, OPERATIONAL, DurableLog
from .models import (
    ConversationFilter,
    ConversationRecord,
    OperationalFilter,
    OperationalRecord,
    RecordKind,
    SearchResult,
    SessionContext,
    memory_id,
)

logger = logging.getLogger(__name__)

SESSION_CONTEXT_LIMIT = 50

RecordT = TypeVar("RecordT", ConversationRecord, OperationalRecord)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class MemoryManager:
    """
    High-level memory interface shared by MCP servers.

    Owns the durable log, the similarity index and the decision of which
    one answers searches. Backend selection:
    - config.backend == "json" -> fallback search only
    - otherwise -> ChromaDB, degrading to fallback search on any failure
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        index: SimilarityIndex | None = None,
    ):
        """
        Initialize memory manager.

        Args:
            config: Store settings; read from the environment when omitted
            index: Similarity index to use instead of one built from config
        """
        self.config = config or MemoryConfig()
        self.domain = self.config.domain

        self._log = DurableLog(self.config.memory_dir)
        self._fallback = FallbackSearch(self._log)
        if self.config.backend == "json":
            self._index = None
        else:
            self._index = index or SimilarityIndex(self.config)

        self._initialized = False
        self._lock = asyncio.Lock()
        self._backoff = self.config.retry_backoff
        self._next_retry: float | None = None
        # Bumped on every successful connect; failures from an older
        # connection must not tear down a newer one.
        self._generation = 0

    @property
    def fallback_mode(self) -> bool:
        """True while searches are served by the fallback engine."""
        return self._index is None or not self._index.connected

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """
        Prepare the log directory and provision the vector collections.

        Safe to call repeatedly. A provisioning failure leaves the manager in
        fallback mode; whether it ever tries again depends on
        config.fallback_policy.

        Raises:
            PersistenceError: If the log directory cannot be created
        """
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            await self._log.ensure_root()
            if self._index is not None:
                await self._connect_index()
            self._initialized = True
            logger.info(
                "[%s] Memory initialized (%s backend)",
                self.domain,
                "json" if self.fallback_mode else "chroma",
            )

    async def _connect_index(self) -> bool:
        try:
            await self._index.connect()
        except BackendUnavailable as e:
            self._degrade(e)
            return False
        self._generation += 1
        self._backoff = self.config.retry_backoff
        self._next_retry = None
        logger.info("[%s] ChromaDB collections ready", self.domain)
        return True

    def _degrade(self, error: BackendUnavailable, generation: int | None = None) -> None:
        if generation is not None and (generation != self._generation or not self._index.connected):
            logger.debug("[%s] Ignoring failure from a replaced connection: %s", self.domain, error)
            return
        self._index.reset()
        if self.config.fallback_policy == "retry":
            self._next_retry = time.monotonic() + self._backoff
            logger.warning(
                "[%s] Similarity backend unavailable (%s); fallback search, retrying in %.0fs",
                self.domain,
                error,
                self._backoff,
            )
            self._backoff = min(self._backoff * 2, self.config.retry_backoff_max)
        else:
            self._next_retry = None
            logger.warning(
                "[%s] Similarity backend unavailable (%s); fallback search for this process",
                self.domain,
                error,
            )

    async def _index_ready(self) -> bool:
        await self.initialize()
        if self._index is None:
            return False
        if self._index.connected:
            return True
        if self._next_retry is None or time.monotonic() < self._next_retry:
            return False
        async with self._lock:
            if self._index.connected:
                return True
            if self._next_retry is None or time.monotonic() < self._next_retry:
                return False
            logger.info("[%s] Retrying similarity backend", self.domain)
            return await self._connect_index()

    # =========================================================================
    # Storage API
    # =========================================================================

    async def store_conversation(self, record: ConversationRecord | Mapping[str, Any]) -> str:
        """
        Store a conversation exchange.

        Args:
            record: ConversationRecord or a camelCase/snake_case mapping.
                Any domain it carries is replaced by this manager's domain.

        Returns:
            Memory ID (`<sessionId>_<timestamp>`)

        Raises:
            ValidationError: If required fields are missing or malformed
            PersistenceError: If the durable log write fails
        """
        stamped = self._stamp(self._validate(ConversationRecord, record))
        metadata = {
            "sessionId": stamped.session_id,
            "timestamp": stamped.timestamp,
            "domain": stamped.domain,
            "tags": stamped.tags,
            "context": stamped.context,
        }
        return await self._store(stamped, CONVERSATIONS, "conversation", metadata)

    async def store_operational(self, record: OperationalRecord | Mapping[str, Any]) -> str:
        """
        Store an operational incident.

        Requires incidentId, a non-empty symptoms list and an environment of
        dev, test, staging or prod.

        Returns:
            Memory ID (`<incidentId>_<timestamp>`)

        Raises:
            ValidationError: If required fields are missing or malformed
            PersistenceError: If the durable log write fails
        """
        stamped = self._stamp(self._validate(OperationalRecord, record))
        metadata = {
            "incidentId": stamped.incident_id,
            "domain": stamped.domain,
            "timestamp": stamped.timestamp,
            "environment": stamped.environment,
            "tags": stamped.tags,
            "affectedResources": stamped.affected_resources,
        }
        return await self._store(stamped, OPERATIONAL, "operational", metadata)

    @staticmethod
    def _validate(model: type[RecordT], record: RecordT | Mapping[str, Any]) -> RecordT:
        if isinstance(record, model):
            return record
        if not isinstance(record, Mapping):
            raise ValidationError(f"Expected {model.__name__} or mapping, got {type(record).__name__}")
        try:
            return model.model_validate(dict(record))
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

    def _stamp(self, record: RecordT) -> RecordT:
        update: dict[str, Any] = {"domain": self.domain}
        if record.timestamp is None:
            update["timestamp"] = _now_ms()
        return record.model_copy(update=update)

    async def _store(
        self,
        record: ConversationRecord | OperationalRecord,
        category: str,
        kind: RecordKind,
        metadata: dict[str, Any],
    ) -> str:
        await self.initialize()
        record_id = memory_id(record)

        try:
            await self._log.append(record, category)
        except PersistenceError:
            logger.error("[%s] Failed to store %s memory %s", self.domain, kind, record_id)
            raise

        if await self._index_ready():
            generation = self._generation
            try:
                await self._index.add(kind, record_id, record.document(), metadata)
            except BackendUnavailable as e:
                self._degrade(e, generation)

        return record_id

    # =========================================================================
    # Search API
    # =========================================================================

    async def search_conversations(
        self,
        query: str,
        limit: int = 5,
        session_id: str | None = None,
    ) -> list[SearchResult]:
        """
        Search stored conversations.

        Args:
            query: Search text; "" matches everything in fallback mode
            limit: Max results
            session_id: Restrict to one session

        Returns:
            Matching results; empty when nothing matched or the search failed
        """
        return await self._search(
            "conversation", CONVERSATIONS, query, limit, ConversationFilter(session_id=session_id)
        )

    async def search_operational(
        self,
        query: str,
        limit: int = 5,
        environment: str | None = None,
        domain: str | None = None,
    ) -> list[SearchResult]:
        """Search stored incidents, optionally filtered by environment and owning domain."""
        return await self._search(
            "operational",
            OPERATIONAL,
            query,
            limit,
            OperationalFilter(environment=environment, domain=domain),
        )

    async def _search(
        self,
        kind: RecordKind,
        category: str,
        query: str,
        limit: int,
        record_filter: ConversationFilter | OperationalFilter,
    ) -> list[SearchResult]:
        if limit <= 0:
            return []
        try:
            if await self._index_ready():
                generation = self._generation
                try:
                    return await self._index.query(kind, query, limit, record_filter.where())
                except BackendUnavailable as e:
                    self._degrade(e, generation)
            return await self._fallback.search(query, category, kind, limit, record_filter)
        except Exception:
            logger.exception("[%s] %s search failed", self.domain, kind.capitalize())
            return []

    async def get_session_context(self, session_id: str) -> SessionContext:
        """
        Summarize a session from its most recent stored conversations.

        Returns:
            SessionContext; messageCount is 0 for unknown sessions
        """
        conversations = await self.search_conversations("", SESSION_CONTEXT_LIMIT, session_id)
        if not conversations:
            return SessionContext(session_id=session_id)

        tags: dict[str, None] = {}
        domains: dict[str, None] = {}
        timestamps: list[int] = []
        for conv in conversations:
            for tag in conv.metadata.get("tags") or []:
                tags[tag] = None
            if conv.metadata.get("domain"):
                domains[conv.metadata["domain"]] = None
            if isinstance(conv.metadata.get("timestamp"), int):
                timestamps.append(conv.metadata["timestamp"])

        return SessionContext(
            session_id=session_id,
            message_count=len(conversations),
            domains=list(domains),
            common_tags=list(tags),
            last_activity=max(timestamps) if timestamps else None,
            summary=f"Session with {len(conversations)} messages across {len(domains)} domains",
        )

    # =========================================================================
    # Extraction helpers
    # =========================================================================

    def extract_tags(self, text: str) -> list[str]:
        return extract_tags(text)

    def extract_context(self, user_message: str, assistant_response: str) -> list[str]:
        return extract_context(user_message, assistant_response)
