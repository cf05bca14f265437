from __future__ import annotations

import asyncio
import math
from typing import Any, Literal
from uuid import UUID

import structlog

from knowledge_service.domain.chunking import (
    ChunkingOptions,
    build_chunk_metadata,
    generate_chunks,
)
from knowledge_service.domain.exceptions import (
    ChunkingError,
    ChunkNotFoundError,
    DocumentNotFoundError,
    EmbeddingError,
    EmptyEmbeddingInputError,
    IngestionTimeoutError,
    InvalidChunkContentError,
    KnowledgeBaseError,
    PersistenceError,
    RetrievalError,
    SplitError,
)
from knowledge_service.domain.interfaces import (
    ChunkerPort,
    ChunkRepositoryPort,
    DocumentRepositoryPort,
    EmbeddingPort,
    EventPublisherPort,
)
from knowledge_service.domain.models import (
    ChunkFilter,
    ChunkingOutcome,
    CreateDocumentRequest,
    IngestionReport,
    IngestionSession,
    KnowledgeChunk,
    KnowledgeDocument,
    NewChunk,
    ReembedReport,
    SimilarityQuery,
)
from shared.events.base import BaseEvent
from shared.events.document_events import DocumentChunkedEvent, DocumentIngestionFailedEvent
from shared.schemas.documents import ChunkingMethod, ChunkStats, IngestionState, RetrievedChunk

logger = structlog.get_logger(__name__)

FailurePolicy = Literal["abort", "persist_null"]


class RuleBasedChunker(ChunkerPort):
    """Deterministic strategies. Also the paragraph fallback for AI-assisted requests."""

    async def chunk(self, content: str, options: ChunkingOptions) -> ChunkingOutcome:
        requested = ChunkingMethod(options.method)
        effective = ChunkingMethod.PARAGRAPH if requested is ChunkingMethod.AI_ASSISTED else requested
        return ChunkingOutcome(
            chunks=generate_chunks(content, options),
            requested_method=requested,
            method=effective,
        )


class FallbackChunker(ChunkerPort):
    def __init__(self, primary: ChunkerPort, fallback: ChunkerPort) -> None:
        self._primary = primary
        self._fallback = fallback

    async def chunk(self, content: str, options: ChunkingOptions) -> ChunkingOutcome:
        try:
            return await self._primary.chunk(content, options)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "chunking.ai.fallback",
                requested_method=options.method,
                error_code=getattr(exc, "error_code", None),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if isinstance(exc, ChunkingError):
                reason = str(exc)
            else:
                reason = f"AI-assisted chunking failed: {type(exc).__name__}: {exc}"
            outcome = await self._fallback.chunk(content, options)
            notice = f"{reason} Fell back to paragraph chunking."
            return outcome.model_copy(update={"notices": [*outcome.notices, notice]})


class ChunkingService:
    def __init__(self, ai_chunker: ChunkerPort | None = None) -> None:
        self._rules = RuleBasedChunker()
        self._ai = FallbackChunker(ai_chunker, self._rules) if ai_chunker else None

    async def chunk(self, content: str, options: ChunkingOptions) -> ChunkingOutcome:
        method = ChunkingMethod(options.method)

        if not content.strip():
            return ChunkingOutcome(chunks=[], requested_method=method, method=method)

        if method is not ChunkingMethod.AI_ASSISTED:
            outcome = await self._rules.chunk(content, options)
        elif self._ai is None:
            outcome = await self._rules.chunk(content, options)
            outcome = outcome.model_copy(
                update={"notices": ["AI-assisted chunking is not configured. Used paragraph chunking."]}
            )
        else:
            outcome = await self._ai.chunk(content, options)

        logger.debug(
            "chunking.completed",
            requested_method=str(outcome.requested_method),
            method=str(outcome.method),
            chunk_count=len(outcome.chunks),
        )
        return outcome


class KnowledgeBaseService:
    """Tenant-scoped document and chunk management."""

    def __init__(
        self,
        documents: DocumentRepositoryPort,
        chunks: ChunkRepositoryPort,
    ) -> None:
        self._documents = documents
        self._chunks = chunks

    async def create_document(self, tenant_id: str, request: CreateDocumentRequest) -> KnowledgeDocument:
        document = KnowledgeDocument(
            tenant_id=tenant_id,
            title=request.title,
            content=request.content,
            file_type=request.file_type,
            source_path=request.source_path,
        )
        await self._documents.save(document)
        logger.info(
            "document.created",
            document_id=str(document.document_id),
            tenant_id=tenant_id,
            content_length=len(document.content),
        )
        return document

    async def get_document(self, document_id: UUID, tenant_id: str) -> KnowledgeDocument:
        document = await self._documents.get(document_id, tenant_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    async def list_documents(self, tenant_id: str) -> list[KnowledgeDocument]:
        return await self._documents.list_documents(tenant_id)

    async def delete_document(self, document_id: UUID, tenant_id: str) -> None:
        await self.get_document(document_id, tenant_id)
        deleted_chunks = await self._chunks.delete_all(document_id)
        await self._documents.delete(document_id, tenant_id)
        logger.info("document.deleted", document_id=str(document_id), deleted_chunks=deleted_chunks)

    async def list_chunks(
        self,
        document_id: UUID,
        tenant_id: str,
        chunk_filter: ChunkFilter | None = None,
    ) -> list[KnowledgeChunk]:
        await self.get_document(document_id, tenant_id)
        return await self._chunks.list_chunks(document_id, chunk_filter)

    async def get_chunk(self, chunk_id: UUID, tenant_id: str) -> KnowledgeChunk:
        chunk = await self._chunks.get(chunk_id, tenant_id)
        if chunk is None:
            raise ChunkNotFoundError(chunk_id)
        return chunk

    async def update_chunk_content(self, chunk_id: UUID, tenant_id: str, content: str) -> KnowledgeChunk:
        if not content.strip():
            raise InvalidChunkContentError(chunk_id)
        chunk = await self._chunks.update_content(chunk_id, tenant_id, content)
        # Editing never re-embeds; the chunk is reported stale until backfilled.
        logger.info(
            "chunk.content.updated",
            chunk_id=str(chunk_id),
            document_id=str(chunk.document_id),
            embedding_stale=chunk.embedding_stale,
        )
        return chunk

    async def set_chunk_enabled(self, chunk_id: UUID, tenant_id: str, enabled: bool) -> KnowledgeChunk:
        chunk = await self._chunks.set_enabled(chunk_id, tenant_id, enabled)
        logger.info("chunk.enabled.updated", chunk_id=str(chunk_id), enabled=enabled)
        return chunk

    async def delete_chunk(self, chunk_id: UUID, tenant_id: str) -> None:
        await self._chunks.delete(chunk_id, tenant_id)
        logger.info("chunk.deleted", chunk_id=str(chunk_id))

    async def delete_all_chunks(self, document_id: UUID, tenant_id: str) -> int:
        await self.get_document(document_id, tenant_id)
        deleted = await self._chunks.delete_all(document_id)
        logger.info("chunks.deleted_all", document_id=str(document_id), deleted=deleted)
        return deleted

    async def stats(self, tenant_id: str, document_id: UUID | None = None) -> ChunkStats:
        if document_id is not None:
            await self.get_document(document_id, tenant_id)
        return await self._chunks.stats(tenant_id, document_id)


class IngestionOrchestrator:
    """Runs splitting, embedding and persisting for one document at a time.

    Embedding calls run with bounded concurrency; sequence numbers always
    follow splitter output order. With the ``abort`` policy a single failed
    embedding leaves the store untouched; with ``persist_null`` the chunk is
    stored without a vector and flagged ``needs_reembedding``.
    """

    def __init__(
        self,
        chunking: ChunkingService,
        embedder: EmbeddingPort,
        documents: DocumentRepositoryPort,
        chunks: ChunkRepositoryPort,
        publisher: EventPublisherPort | None = None,
        concurrency: int = 4,
        failure_policy: FailurePolicy = "abort",
        timeout_seconds: float = 600.0,
    ) -> None:
        self._chunking = chunking
        self._embedder = embedder
        self._documents = documents
        self._chunks = chunks
        self._publisher = publisher
        self._concurrency = concurrency
        self._failure_policy = failure_policy
        self._timeout_seconds = timeout_seconds

    async def ingest(
        self,
        document: KnowledgeDocument,
        options: ChunkingOptions,
        session: IngestionSession | None = None,
        replace: bool = True,
        correlation_id: UUID | None = None,
    ) -> IngestionReport:
        session = session or IngestionSession.start(document, options)
        log = logger.bind(
            document_id=str(document.document_id),
            tenant_id=document.tenant_id,
            session_id=str(session.session_id),
        )
        log.info("ingestion.document.started", method=options.method, replace=replace)

        try:
            async with asyncio.timeout(self._timeout_seconds):
                report = await self._run(document, options, session, replace, log)
        except TimeoutError:
            error = IngestionTimeoutError(document.document_id, self._timeout_seconds)
            await self._fail(session, error, log, correlation_id)
            raise error from None
        except KnowledgeBaseError as exc:
            await self._fail(session, exc, log, correlation_id)
            raise

        await self._publish(
            DocumentChunkedEvent(
                correlation_id=correlation_id or session.session_id,
                tenant_id=document.tenant_id,
                document_id=document.document_id,
                session_id=session.session_id,
                chunk_count=report.inserted_count,
                embedded_count=report.embedded_count,
                chunking_method=str(report.chunking_method),
                embedding_model=self._embedder.model_name,
            ),
            log,
        )
        log.info(
            "ingestion.document.completed",
            chunk_count=report.inserted_count,
            embedded_count=report.embedded_count,
            summary=report.summary,
        )
        return report

    async def _run(
        self,
        document: KnowledgeDocument,
        options: ChunkingOptions,
        session: IngestionSession,
        replace: bool,
        log: Any,
    ) -> IngestionReport:
        session.transition(IngestionState.SPLITTING)
        outcome = await self._chunking.chunk(document.content, options)
        session.effective_method = outcome.method
        session.notices.extend(outcome.notices)
        if not outcome.chunks:
            raise SplitError(str(outcome.requested_method), document.document_id)
        session.chunk_count = len(outcome.chunks)

        session.transition(IngestionState.EMBEDDING)
        results = await self._embed_all(outcome.chunks, document.document_id, log)
        failures = [
            (index, result)
            for index, result in enumerate(results, start=1)
            if isinstance(result, EmbeddingError)
        ]
        session.failed_chunk_indices = [index for index, _ in failures]
        session.embedded_count = len(results) - len(failures)

        if failures and self._failure_policy == "abort":
            index, first = failures[0]
            first.record_batch(session.failed_chunk_indices, len(results))
            log.error(
                "ingestion.embedding.aborted",
                chunk_index=index,
                failed_count=len(failures),
                total_chunks=len(results),
                error_code=first.error_code,
            )
            raise first

        total = len(outcome.chunks)
        new_chunks = []
        for index, (text, result) in enumerate(zip(outcome.chunks, results), start=1):
            metadata = build_chunk_metadata(outcome.method, options, index, total)
            embedding = None if isinstance(result, EmbeddingError) else result
            if embedding is None:
                metadata["needs_reembedding"] = True
                metadata["embedding_error"] = result.error_code
            new_chunks.append(NewChunk(content=text, embedding=embedding, metadata=metadata))

        session.transition(IngestionState.PERSISTING)
        if replace:
            stored = await self._chunks.replace_all(document, new_chunks)
            stored_count = await self._chunks.count(document.document_id)
        else:
            stored = await self._chunks.bulk_insert(document, new_chunks)
            stored_count = len(stored)
        if stored_count != len(new_chunks):
            raise PersistenceError(
                "verify_count",
                f"expected {len(new_chunks)} chunks, found {stored_count}",
                document_id=document.document_id,
                partial=True,
            )

        await self._documents.update_chunking_method(document.document_id, outcome.method)
        session.transition(IngestionState.DONE)

        return IngestionReport(
            session_id=session.session_id,
            document_id=document.document_id,
            state=session.state,
            chunking_method=outcome.method,
            total_chunks=total,
            inserted_count=len(stored),
            embedded_count=session.embedded_count,
            failed_embedding_count=len(failures),
            failed_chunk_indices=session.failed_chunk_indices,
            notices=session.notices,
        )

    async def _embed_all(
        self, texts: list[str], document_id: UUID, log: Any
    ) -> list[list[float] | EmbeddingError]:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def embed_one(index: int, text: str) -> list[float] | EmbeddingError:
            async with semaphore:
                try:
                    return await self._embedder.embed(text)
                except EmbeddingError as exc:
                    exc.chunk_index = index
                    exc.document_id = document_id
                    log.warning(
                        "ingestion.chunk.embedding_failed",
                        chunk_index=index,
                        error_code=exc.error_code,
                        error=str(exc),
                    )
                    return exc

        # gather keeps results in submission order regardless of completion order.
        return await asyncio.gather(
            *(embed_one(index, text) for index, text in enumerate(texts, start=1))
        )

    async def _fail(
        self,
        session: IngestionSession,
        error: KnowledgeBaseError,
        log: Any,
        correlation_id: UUID | None,
    ) -> None:
        failed_state = session.state
        session.fail(error)
        log.error(
            "ingestion.document.failed",
            failed_state=str(failed_state),
            error_code=error.error_code,
            chunk_index=error.chunk_index,
            error=str(error),
        )
        await self._publish(
            DocumentIngestionFailedEvent(
                correlation_id=correlation_id or session.session_id,
                tenant_id=session.tenant_id,
                document_id=session.document_id,
                session_id=session.session_id,
                failed_state=str(failed_state),
                error_code=error.error_code,
                error_message=str(error),
            ),
            log,
        )

    async def _publish(self, event: BaseEvent, log: Any) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(event)
        except Exception as exc:  # noqa: BLE001
            # Chunks are already persisted; a lost notification must not fail ingestion.
            log.error("ingestion.event.publish_failed", topic=event.topic, error=str(exc))

    async def add_chunk(
        self,
        document: KnowledgeDocument,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeChunk:
        metadata = {"chunking_method": "manual", **(metadata or {})}
        try:
            embedding: list[float] | None = await self._embedder.embed(content)
        except EmbeddingError as exc:
            exc.document_id = document.document_id
            if self._failure_policy == "abort" or isinstance(exc, EmptyEmbeddingInputError):
                logger.error(
                    "chunk.add.embedding_failed",
                    document_id=str(document.document_id),
                    error_code=exc.error_code,
                )
                raise
            logger.warning(
                "chunk.add.stored_without_embedding",
                document_id=str(document.document_id),
                error_code=exc.error_code,
            )
            embedding = None
            metadata.update(needs_reembedding=True, embedding_error=exc.error_code)

        chunk = await self._chunks.append(
            document, NewChunk(content=content, embedding=embedding, metadata=metadata)
        )
        logger.info(
            "chunk.added",
            document_id=str(document.document_id),
            chunk_id=str(chunk.chunk_id),
            sequence=chunk.sequence,
        )
        return chunk

    async def reembed_chunks(self, tenant_id: str, document_id: UUID | None = None) -> ReembedReport:
        """Embed every chunk whose vector is missing or computed from older content."""
        pending = await self._chunks.list_needing_embedding(tenant_id, document_id)
        semaphore = asyncio.Semaphore(self._concurrency)
        log = logger.bind(tenant_id=tenant_id, document_id=str(document_id) if document_id else None)

        async def reembed(chunk: KnowledgeChunk) -> bool:
            async with semaphore:
                try:
                    vector = await self._embedder.embed(chunk.content)
                    await self._chunks.update_embedding(chunk.chunk_id, tenant_id, vector, chunk.content)
                except (EmbeddingError, ChunkNotFoundError) as exc:
                    log.warning(
                        "reembed.chunk.failed",
                        chunk_id=str(chunk.chunk_id),
                        chunk_document_id=str(chunk.document_id),
                        sequence=chunk.sequence,
                        error_code=exc.error_code,
                    )
                    return False
                return True

        outcomes = await asyncio.gather(*(reembed(chunk) for chunk in pending))
        failed = [chunk.chunk_id for chunk, ok in zip(pending, outcomes) if not ok]
        log.info("reembed.completed", scanned=len(pending), failed=len(failed))
        return ReembedReport(
            scanned_count=len(pending),
            updated_count=len(pending) - len(failed),
            failed_chunk_ids=failed,
        )


class RetrievalService:
    def __init__(
        self,
        chunks: ChunkRepositoryPort,
        embedder: EmbeddingPort,
        similarity_threshold: float = 0.7,
        top_k: int = 5,
        include_stale: bool = False,
    ) -> None:
        self._chunks = chunks
        self._embedder = embedder
        self._similarity_threshold = similarity_threshold
        self._top_k = top_k
        self._include_stale = include_stale

    async def search(
        self,
        tenant_id: str,
        query_embedding: list[float],
        similarity_threshold: float | None = None,
        top_k: int | None = None,
        document_ids: list[UUID] | None = None,
        include_stale: bool | None = None,
    ) -> list[RetrievedChunk]:
        threshold = self._similarity_threshold if similarity_threshold is None else similarity_threshold
        limit = self._top_k if top_k is None else top_k

        if not 0.0 <= threshold <= 1.0:
            raise RetrievalError(f"threshold {threshold} outside [0, 1]", invalid_input=True)
        if limit < 1:
            raise RetrievalError(f"top_k must be positive, got {limit}", invalid_input=True)
        if not query_embedding:
            raise RetrievalError("query vector is empty", invalid_input=True)
        if not all(math.isfinite(value) for value in query_embedding):
            raise RetrievalError("query vector contains non-finite values", invalid_input=True)

        query = SimilarityQuery(
            tenant_id=tenant_id,
            query_embedding=query_embedding,
            threshold=threshold,
            top_k=limit,
            document_ids=document_ids,
            include_stale=self._include_stale if include_stale is None else include_stale,
        )
        results = await self._chunks.match_chunks(query)

        logger.info(
            "retrieval.search.completed",
            tenant_id=tenant_id,
            document_count=len(document_ids) if document_ids else None,
            result_count=len(results),
            top_score=results[0].similarity_score if results else 0.0,
        )
        return results

    async def query(
        self,
        tenant_id: str,
        question: str,
        similarity_threshold: float | None = None,
        top_k: int | None = None,
        document_ids: list[UUID] | None = None,
    ) -> list[RetrievedChunk]:
        query_embedding = await self._embedder.embed(question)
        return await self.search(
            tenant_id,
            query_embedding,
            similarity_threshold=similarity_threshold,
            top_k=top_k,
            document_ids=document_ids,
        )
