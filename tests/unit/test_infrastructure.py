"""Unit tests for Postgres row mapping, the Redpanda publisher and settings."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiokafka.errors import KafkaError
from pydantic import ValidationError

from knowledge_service.domain.exceptions import PersistenceError
from knowledge_service.domain.models import KnowledgeDocument, NewChunk, materialize_chunks
from knowledge_service.infrastructure.producer import RedpandaEventPublisher
from knowledge_service.infrastructure.repository import (
    PostgresChunkRepository,
    _chunk_params,
    _row_to_chunk,
    _vector_literal,
)
from knowledge_service.settings import Settings
from shared.events.document_events import DocumentChunkedEvent


def _chunk_row(**overrides) -> dict:
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "document_id": uuid.uuid4(),
        "tenant_id": "tenant_acme",
        "content": "Discounts need approval.",
        "sequence": 1,
        "embedding": "[0.25,-0.5,1]",
        "embedded_content_hash": None,
        "metadata": '{"chunking_method": "paragraph", "index": 1}',
        "enabled": True,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


class TestRowMapping:
    def test_text_encoded_vector_and_jsonb_are_decoded(self) -> None:
        chunk = _row_to_chunk(_chunk_row())

        assert chunk.embedding == [0.25, -0.5, 1.0]
        assert chunk.metadata == {"chunking_method": "paragraph", "index": 1}

    def test_null_embedding_stays_null(self) -> None:
        chunk = _row_to_chunk(_chunk_row(embedding=None, metadata=None))

        assert chunk.embedding is None
        assert chunk.metadata == {}
        assert chunk.needs_embedding

    def test_chunk_params_round_trip_vector_literal(self) -> None:
        document = KnowledgeDocument(tenant_id="tenant_acme", title="Doc", content="x")
        (chunk,) = materialize_chunks(
            document, [NewChunk(content="x", embedding=[0.5, 1.0], metadata={"a": 1})], 7
        )

        params = _chunk_params(chunk)

        assert params["sequence"] == 7
        assert params["embedding"] == _vector_literal([0.5, 1.0]) == "[0.5,1.0]"
        assert json.loads(params["metadata"]) == {"a": 1}
        assert params["embedded_content_hash"] == chunk.embedded_content_hash


class TestRedpandaEventPublisher:
    def _event(self) -> DocumentChunkedEvent:
        return DocumentChunkedEvent(
            tenant_id="tenant_acme",
            document_id=uuid.uuid4(),
            session_id=uuid.uuid4(),
            chunk_count=3,
            embedded_count=3,
            chunking_method="paragraph",
            embedding_model="text-embedding-ada-002",
        )

    @pytest.mark.asyncio
    async def test_publish_before_start_raises(self) -> None:
        with pytest.raises(RuntimeError):
            await RedpandaEventPublisher("localhost:9092").publish(self._event())

    @pytest.mark.asyncio
    async def test_publish_keys_by_tenant(self) -> None:
        producer = MagicMock()
        producer.start = AsyncMock()
        producer.send_and_wait = AsyncMock()
        event = self._event()

        with patch("knowledge_service.infrastructure.producer.AIOKafkaProducer", return_value=producer):
            publisher = RedpandaEventPublisher("localhost:9092")
            await publisher.start()
            await publisher.publish(event)

        call = producer.send_and_wait.await_args
        assert call.args == ("knowledge.document.chunked",)
        assert call.kwargs["key"] == "tenant_acme"
        assert call.kwargs["value"]["chunk_count"] == 3
        assert ("event_type", b"knowledge.document.chunked") in call.kwargs["headers"]
        assert publisher.is_started

    @pytest.mark.asyncio
    async def test_broker_error_propagates(self) -> None:
        producer = MagicMock()
        producer.start = AsyncMock()
        producer.send_and_wait = AsyncMock(side_effect=KafkaError())

        with patch("knowledge_service.infrastructure.producer.AIOKafkaProducer", return_value=producer):
            publisher = RedpandaEventPublisher("localhost:9092")
            await publisher.start()
            with pytest.raises(KafkaError):
                await publisher.publish(self._event())

    @pytest.mark.asyncio
    async def test_failed_start_leaves_publisher_stopped(self) -> None:
        producer = MagicMock()
        producer.start = AsyncMock(side_effect=KafkaError())

        with patch("knowledge_service.infrastructure.producer.AIOKafkaProducer", return_value=producer):
            publisher = RedpandaEventPublisher("localhost:9092")
            with pytest.raises(KafkaError):
                await publisher.start()

        assert not publisher.is_started
        await publisher.stop()


class TestSettings:
    def test_empty_urls_select_in_process_store_and_no_events(self) -> None:
        settings = Settings(database_url="", redpanda_bootstrap_servers="")

        assert not settings.uses_database
        assert not settings.publishes_events

    def test_database_url_must_use_asyncpg(self) -> None:
        with pytest.raises(ValidationError):
            Settings(database_url="postgresql://user:pw@localhost/knowledge")

        settings = Settings(database_url="postgresql+asyncpg://user:pw@localhost/knowledge")
        assert settings.uses_database

    def test_retrieval_defaults(self) -> None:
        settings = Settings()

        assert settings.retrieval_similarity_threshold == 0.7
        assert settings.retrieval_top_k == 5
        assert settings.embedding_failure_policy == "abort"
        assert settings.ai_chunking_timeout_seconds < settings.ingestion_timeout_seconds


def _session_factory(*results: MagicMock) -> tuple[MagicMock, MagicMock]:
    session = MagicMock()
    session.execute = AsyncMock(side_effect=list(results))
    session.begin.return_value.__aexit__.return_value = False
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    factory.return_value.__aexit__.return_value = False
    return factory, session


def _exists(value: bool) -> MagicMock:
    result = MagicMock()
    result.scalar.return_value = value
    return result


class TestPostgresBulkInsert:
    def _repository(self, factory: MagicMock) -> PostgresChunkRepository:
        repository = PostgresChunkRepository(MagicMock())
        repository._session_factory = factory
        return repository

    @pytest.mark.asyncio
    async def test_refuses_document_with_existing_chunks(self) -> None:
        factory, session = _session_factory(MagicMock(), _exists(True))
        document = KnowledgeDocument(tenant_id="tenant_acme", title="Doc", content="x")

        with pytest.raises(PersistenceError) as exc_info:
            await self._repository(factory).bulk_insert(document, [NewChunk(content="again")])

        assert exc_info.value.operation == "bulk_insert"
        assert "replace_all" in str(exc_info.value)
        # Lock and existence check only; nothing inserted.
        assert session.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_inserts_into_empty_document(self) -> None:
        factory, session = _session_factory(MagicMock(), _exists(False), MagicMock())
        document = KnowledgeDocument(tenant_id="tenant_acme", title="Doc", content="x")

        rows = await self._repository(factory).bulk_insert(
            document, [NewChunk(content="first"), NewChunk(content="second")]
        )

        assert [row.sequence for row in rows] == [1, 2]
        insert_params = session.execute.await_args_list[2].args[1]
        assert [params["content"] for params in insert_params] == ["first", "second"]


class TestMigration:
    def test_blank_content_check_strips_all_whitespace(self) -> None:
        sql = (Path(__file__).parents[2] / "migrations" / "001_knowledge_base.sql").read_text()

        assert "CHECK (btrim(content, E' \\t\\r\\n') <> '')" in sql
