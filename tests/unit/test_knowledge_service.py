"""Unit tests for document and chunk management."""

from __future__ import annotations

import uuid

import pytest

from knowledge_service.domain.chunking import ParagraphOptions
from knowledge_service.domain.exceptions import (
    ChunkNotFoundError,
    DocumentNotFoundError,
    InvalidChunkContentError,
)
from knowledge_service.domain.models import ChunkFilter, CreateDocumentRequest, NewChunk


class TestDocuments:
    @pytest.mark.asyncio
    async def test_create_and_list(self, knowledge_service, tenant_id) -> None:
        created = await knowledge_service.create_document(
            tenant_id, CreateDocumentRequest(title="Pricing", content="Body text.")
        )

        listed = await knowledge_service.list_documents(tenant_id)

        assert [d.document_id for d in listed] == [created.document_id]
        assert created.to_metadata().content_length == len("Body text.")
        assert await knowledge_service.list_documents("tenant_other") == []

    @pytest.mark.asyncio
    async def test_missing_document_raises(self, knowledge_service, tenant_id) -> None:
        with pytest.raises(DocumentNotFoundError) as exc_info:
            await knowledge_service.get_document(uuid.uuid4(), tenant_id)

        assert exc_info.value.error_code == "DOCUMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_delete_cascades_to_chunks(
        self, knowledge_service, orchestrator, seeded_document, chunk_repo, tenant_id
    ) -> None:
        await orchestrator.ingest(seeded_document, ParagraphOptions())

        await knowledge_service.delete_document(seeded_document.document_id, tenant_id)

        assert await chunk_repo.count(seeded_document.document_id) == 0
        with pytest.raises(DocumentNotFoundError):
            await knowledge_service.get_document(seeded_document.document_id, tenant_id)

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_delete(self, knowledge_service, seeded_document) -> None:
        with pytest.raises(DocumentNotFoundError):
            await knowledge_service.delete_document(seeded_document.document_id, "tenant_other")


class TestChunks:
    @pytest.mark.asyncio
    async def test_listing_requires_visible_document(
        self, knowledge_service, orchestrator, seeded_document, tenant_id
    ) -> None:
        await orchestrator.ingest(seeded_document, ParagraphOptions())

        found = await knowledge_service.list_chunks(
            seeded_document.document_id, tenant_id, ChunkFilter(search_text="renew")
        )

        assert [c.sequence for c in found] == [2]
        with pytest.raises(DocumentNotFoundError):
            await knowledge_service.list_chunks(seeded_document.document_id, "tenant_other")

    @pytest.mark.asyncio
    async def test_edit_marks_embedding_stale(
        self, knowledge_service, orchestrator, seeded_document, tenant_id
    ) -> None:
        await orchestrator.ingest(seeded_document, ParagraphOptions())
        (first, *_) = await knowledge_service.list_chunks(seeded_document.document_id, tenant_id)

        edited = await knowledge_service.update_chunk_content(first.chunk_id, tenant_id, "Rewritten.")

        assert edited.embedding_stale
        stats = await knowledge_service.stats(tenant_id, seeded_document.document_id)
        assert stats.stale_embedding_chunks == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", "\n\t\n", "\r\n"])
    async def test_blank_edit_is_rejected_and_content_kept(
        self, knowledge_service, chunk_repo, seeded_document, tenant_id, content
    ) -> None:
        (chunk,) = await chunk_repo.bulk_insert(seeded_document, [NewChunk(content="Alpha")])

        with pytest.raises(InvalidChunkContentError):
            await knowledge_service.update_chunk_content(chunk.chunk_id, tenant_id, content)

        stored = await knowledge_service.get_chunk(chunk.chunk_id, tenant_id)
        assert stored.content == "Alpha"

    @pytest.mark.asyncio
    async def test_store_rejects_blank_content_directly(
        self, chunk_repo, seeded_document, tenant_id
    ) -> None:
        (chunk,) = await chunk_repo.bulk_insert(seeded_document, [NewChunk(content="Alpha")])

        with pytest.raises(InvalidChunkContentError):
            await chunk_repo.update_content(chunk.chunk_id, tenant_id, " \t ")

    @pytest.mark.asyncio
    async def test_missing_chunk_raises(self, knowledge_service, tenant_id) -> None:
        with pytest.raises(ChunkNotFoundError):
            await knowledge_service.get_chunk(uuid.uuid4(), tenant_id)
        with pytest.raises(ChunkNotFoundError):
            await knowledge_service.set_chunk_enabled(uuid.uuid4(), tenant_id, False)

    @pytest.mark.asyncio
    async def test_delete_all_chunks_keeps_document(
        self, knowledge_service, orchestrator, seeded_document, tenant_id
    ) -> None:
        await orchestrator.ingest(seeded_document, ParagraphOptions())

        deleted = await knowledge_service.delete_all_chunks(seeded_document.document_id, tenant_id)

        assert deleted == 3
        assert await knowledge_service.get_document(seeded_document.document_id, tenant_id)
        stats = await knowledge_service.stats(tenant_id)
        assert stats.is_empty
