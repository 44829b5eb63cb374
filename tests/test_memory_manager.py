"""
Tests for MemoryManager.

Covers:
- Durable writes and domain stamping
- Validation boundary
- Vector search, fallback search and degradation between them
- Sticky vs. retry fallback policy
- Session context aggregation
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeChromaClient, FakeClientFactory, FakeEmbedding, SlowEmbedding, log_files
from shared_memory.config import MemoryConfig
from shared_memory.errors import BackendUnavailable, PersistenceError, ValidationError
from shared_memory.index_adapter import SimilarityIndex
from shared_memory.memory_manager import MemoryManager
from shared_memory.models import FALLBACK_DISTANCE, ConversationRecord, OperationalRecord


def _conversation(**overrides) -> dict:
    data = {
        "sessionId": "s1",
        "userMessage": "pod keeps crashing",
        "assistantResponse": "check the liveness endpoint",
    }
    data.update(overrides)
    return data


def _incident(**overrides) -> dict:
    data = {
        "incidentId": "inc-42",
        "symptoms": ["OOMKilled", "restarts"],
        "environment": "prod",
        "rootCause": "memory limit too low",
        "diagnosticSteps": ["oc describe pod"],
    }
    data.update(overrides)
    return data


class TestDurability:
    async def test_conversation_round_trip(self, json_manager, memory_dir):
        memory_id = await json_manager.store_conversation(_conversation(timestamp=1234))

        assert memory_id == "s1_1234"
        [path] = log_files(memory_dir, "conversations")
        record = ConversationRecord.model_validate_json(path.read_text())
        assert record == ConversationRecord(
            session_id="s1",
            timestamp=1234,
            user_message="pod keeps crashing",
            assistant_response="check the liveness endpoint",
            domain="openshift",
        )

    async def test_operational_round_trip(self, json_manager, memory_dir):
        memory_id = await json_manager.store_operational(_incident(timestamp=99))

        assert memory_id == "inc-42_99"
        [path] = log_files(memory_dir, "operational")
        record = OperationalRecord.model_validate_json(path.read_text())
        assert record.incident_id == "inc-42"
        assert record.symptoms == ["OOMKilled", "restarts"]
        assert record.root_cause == "memory limit too low"
        assert record.domain == "openshift"

    async def test_timestamp_assigned_when_absent(self, json_manager, memory_dir):
        memory_id = await json_manager.store_conversation(_conversation())

        [path] = log_files(memory_dir, "conversations")
        timestamp = json.loads(path.read_text())["timestamp"]
        assert isinstance(timestamp, int) and timestamp > 0
        assert memory_id == f"s1_{timestamp}"

    async def test_accepts_record_models(self, json_manager):
        record = ConversationRecord(session_id="s9", timestamp=5, user_message="hi")
        assert await json_manager.store_conversation(record) == "s9_5"

    async def test_persistence_error_surfaces(self, tmp_path):
        blocker = tmp_path / "memory"
        blocker.write_text("file, not a directory")
        manager = MemoryManager(MemoryConfig(memory_dir=blocker, domain="x", backend="json"))

        with pytest.raises(PersistenceError):
            await manager.store_conversation(_conversation())

    async def test_write_persisted_even_if_index_fails(self, vector_manager, chroma_client, memory_dir):
        await vector_manager.initialize()
        chroma_client.collections["conversations_team1"].fail_upsert = True

        memory_id = await vector_manager.store_conversation(_conversation(timestamp=7))

        assert memory_id == "s1_7"
        assert len(log_files(memory_dir, "conversations")) == 1
        assert vector_manager.fallback_mode


class TestDomainStamping:
    async def test_caller_domain_overridden(self, json_manager, memory_dir):
        await json_manager.store_conversation(_conversation(domain="intruder"))
        await json_manager.store_operational(_incident(domain="intruder"))

        for path in log_files(memory_dir):
            assert json.loads(path.read_text())["domain"] == "openshift"

    async def test_index_metadata_stamped(self, vector_manager, chroma_client):
        await vector_manager.store_conversation(_conversation(timestamp=1, domain="intruder"))

        [(_, metadata)] = chroma_client.collections["conversations_team1"].rows.values()
        assert metadata["domain"] == "openshift"


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"environment": "qa"},
            {"symptoms": []},
            {"incidentId": ""},
        ],
    )
    async def test_operational_rejected_without_write(self, json_manager, memory_dir, overrides):
        with pytest.raises(ValidationError):
            await json_manager.store_operational(_incident(**overrides))
        assert log_files(memory_dir) == []

    async def test_missing_required_operational_fields(self, json_manager, memory_dir):
        with pytest.raises(ValidationError):
            await json_manager.store_operational({"incidentId": "x"})
        assert log_files(memory_dir) == []

    async def test_conversation_requires_session_id(self, json_manager, memory_dir):
        with pytest.raises(ValidationError):
            await json_manager.store_conversation(_conversation(sessionId=""))
        assert log_files(memory_dir) == []

    async def test_rejects_non_mapping(self, json_manager):
        with pytest.raises(ValidationError):
            await json_manager.store_conversation(["not", "a", "record"])


class TestInitialize:
    async def test_idempotent(self, vector_manager, client_factory, memory_dir):
        await vector_manager.initialize()
        await vector_manager.initialize()

        assert memory_dir.is_dir()
        assert client_factory.calls == 1
        assert not vector_manager.fallback_mode

    async def test_concurrent_callers_connect_once(self, vector_manager, client_factory):
        await asyncio.gather(*(vector_manager.initialize() for _ in range(5)))
        assert client_factory.calls == 1

    async def test_provisioning_failure_enters_fallback(self, chroma_config):
        factory = FakeClientFactory(FakeChromaClient(), failures=1)
        manager = MemoryManager(chroma_config, index=SimilarityIndex(chroma_config, factory))

        await manager.initialize()

        assert manager.fallback_mode

    async def test_json_backend_never_connects(self, json_manager):
        await json_manager.initialize()
        assert json_manager.fallback_mode


class TestSearch:
    async def test_fallback_finds_crash(self, json_manager):
        await json_manager.store_conversation(_conversation(userMessage="app crash on start"))
        await json_manager.store_conversation(_conversation(userMessage="all good", assistantResponse="nice"))

        results = await json_manager.search_conversations("crash", 5)

        assert len(results) == 1
        assert results[0].distance == FALLBACK_DISTANCE
        assert results[0].metadata["userMessage"] == "app crash on start"

    async def test_vector_search(self, vector_manager, chroma_client):
        await vector_manager.store_conversation(_conversation(timestamp=1, userMessage="pod crash"))
        await vector_manager.store_conversation(_conversation(sessionId="s2", timestamp=2, userMessage="pod crash"))

        results = await vector_manager.search_conversations("pod crash", 5, session_id="s2")

        assert [r.metadata["sessionId"] for r in results] == ["s2"]
        query = chroma_client.collections["conversations_team1"].queries[-1]
        assert query["where"] == {"sessionId": "s2"}

    async def test_operational_filters(self, vector_manager, chroma_client):
        await vector_manager.store_operational(_incident(timestamp=1))
        await vector_manager.store_operational(_incident(timestamp=2, environment="dev"))

        results = await vector_manager.search_operational("oom", 5, environment="prod", domain="openshift")

        assert len(results) == 1
        assert results[0].metadata["environment"] == "prod"
        assert results[0].metadata["affectedResources"] == []
        query = chroma_client.collections["operational_team1"].queries[-1]
        assert query["where"] == {"$and": [{"environment": "prod"}, {"domain": "openshift"}]}

    async def test_query_failure_degrades_to_fallback(self, vector_manager, chroma_client):
        await vector_manager.store_conversation(_conversation(timestamp=1, userMessage="disk full"))
        chroma_client.collections["conversations_team1"].fail_query = True

        results = await vector_manager.search_conversations("disk", 5)

        assert vector_manager.fallback_mode
        assert len(results) == 1
        assert results[0].distance == FALLBACK_DISTANCE

    async def test_unexpected_failure_returns_empty(self, json_manager):
        await json_manager.store_conversation(_conversation())
        with patch.object(json_manager._fallback, "search", AsyncMock(side_effect=RuntimeError("boom"))):
            assert await json_manager.search_conversations("pod", 5) == []

    async def test_non_positive_limit(self, json_manager):
        await json_manager.store_conversation(_conversation())
        assert await json_manager.search_conversations("pod", 0) == []


class TestFallbackPolicy:
    async def test_sticky_never_reconnects(self, chroma_config):
        factory = FakeClientFactory(FakeChromaClient(), failures=1)
        manager = MemoryManager(chroma_config, index=SimilarityIndex(chroma_config, factory))

        await manager.initialize()
        await manager.search_conversations("x", 5)
        await manager.store_conversation(_conversation())

        assert factory.calls == 1
        assert manager.fallback_mode

    async def test_retry_reconnects_after_backoff(self, memory_dir):
        config = MemoryConfig(
            memory_dir=memory_dir,
            domain="openshift",
            embedding_function=FakeEmbedding(),
            fallback_policy="retry",
            retry_backoff=0.05,
            retry_backoff_max=1.0,
        )
        factory = FakeClientFactory(FakeChromaClient(), failures=1)
        manager = MemoryManager(config, index=SimilarityIndex(config, factory))

        await manager.initialize()
        assert manager.fallback_mode

        # inside the backoff window: no new attempt
        await manager.search_conversations("x", 5)
        assert factory.calls == 1

        await asyncio.sleep(0.1)
        await manager.search_conversations("x", 5)

        assert factory.calls == 2
        assert not manager.fallback_mode

    async def test_stale_failure_keeps_new_connection(self, memory_dir):
        config = MemoryConfig(
            memory_dir=memory_dir,
            domain="openshift",
            namespace="team1",
            backend="chroma",
            embedding_function=FakeEmbedding(),
            fallback_policy="retry",
            retry_backoff=0.05,
        )
        client = FakeChromaClient()
        factory = FakeClientFactory(client)
        manager = MemoryManager(config, index=SimilarityIndex(config, factory))
        await manager.initialize()
        stale = manager._generation

        client.collections["conversations_team1"].fail_query = True
        await manager.search_conversations("x", 5)
        assert manager.fallback_mode

        client.collections["conversations_team1"].fail_query = False
        await asyncio.sleep(0.1)
        await manager.search_conversations("x", 5)
        assert factory.calls == 2
        assert not manager.fallback_mode

        # a call that began on the first connection fails late
        manager._degrade(BackendUnavailable("late timeout"), stale)

        assert not manager.fallback_mode
        assert manager._next_retry is None

    async def test_concurrent_failures_back_off_once(self, memory_dir):
        config = MemoryConfig(
            memory_dir=memory_dir,
            domain="openshift",
            namespace="team1",
            backend="chroma",
            embedding_function=FakeEmbedding(),
            fallback_policy="retry",
            retry_backoff=0.05,
        )
        client = FakeChromaClient()
        manager = MemoryManager(config, index=SimilarityIndex(config, FakeClientFactory(client)))
        await manager.initialize()
        generation = manager._generation

        manager._degrade(BackendUnavailable("first"), generation)
        manager._degrade(BackendUnavailable("second"), generation)

        assert manager._backoff == pytest.approx(0.1)


class TestSlowEmbedding:
    async def test_store_does_not_block_loop_or_degrade(self, chroma_config, client_factory, chroma_client):
        chroma_config.embedding_function = SlowEmbedding(0.3)
        chroma_config.backend_timeout = 0.1
        manager = MemoryManager(chroma_config, index=SimilarityIndex(chroma_config, client_factory))
        await manager.initialize()

        ticks = []

        async def ticker():
            while True:
                ticks.append(asyncio.get_running_loop().time())
                await asyncio.sleep(0.02)

        task = asyncio.create_task(ticker())
        try:
            memory_id = await manager.store_conversation(_conversation(timestamp=9))
        finally:
            task.cancel()

        gaps = [b - a for a, b in zip(ticks, ticks[1:])]
        assert len(ticks) > 5
        assert max(gaps) < 0.2
        assert not manager.fallback_mode
        assert memory_id in chroma_client.collections["conversations_team1"].rows


class TestSessionContext:
    async def test_aggregates_across_domains(self, memory_dir):
        managers = {
            domain: MemoryManager(MemoryConfig(memory_dir=memory_dir, domain=domain, backend="json"))
            for domain in ("a", "b")
        }
        await managers["a"].store_conversation(_conversation(timestamp=10, tags=["pod"]))
        await managers["b"].store_conversation(_conversation(timestamp=20, tags=["crash"]))
        await managers["a"].store_conversation(_conversation(timestamp=30, tags=["pod", "crash"]))
        await managers["a"].store_conversation(_conversation(sessionId="other", timestamp=40, tags=["dns"]))

        context = await managers["a"].get_session_context("s1")

        assert context.message_count == 3
        assert set(context.domains) == {"a", "b"}
        assert set(context.common_tags) == {"pod", "crash"}
        assert context.last_activity == 30
        assert context.summary == "Session with 3 messages across 2 domains"

    async def test_vector_backend(self, vector_manager):
        await vector_manager.store_conversation(_conversation(timestamp=1, tags=["pod"]))
        await vector_manager.store_conversation(_conversation(timestamp=2, tags=["dns"]))

        context = await vector_manager.get_session_context("s1")

        assert context.message_count == 2
        assert context.domains == ["openshift"]
        assert set(context.common_tags) == {"pod", "dns"}
        assert context.last_activity == 2

    async def test_unknown_session(self, json_manager):
        context = await json_manager.get_session_context("unknown-session")

        assert context.message_count == 0
        assert context.summary == "No previous context found"
        assert context.model_dump(by_alias=True)["sessionId"] == "unknown-session"


class TestExtractionHelpers:
    def test_delegates(self, json_manager):
        assert "pod" in json_manager.extract_tags("pod restart")
        assert "/etc/hosts" in json_manager.extract_context("see /etc/hosts", "")
