"""In-process repositories.

Used when no database is configured and by the test suite. Each mutation
completes without awaiting, so it is atomic with respect to other coroutines
on the same event loop.
"""

from __future__ import annotations

from uuid import UUID

import numpy as np
import structlog

from knowledge_service.domain.exceptions import (
    ChunkNotFoundError,
    InvalidChunkContentError,
    PersistenceError,
    RetrievalError,
)
from knowledge_service.domain.interfaces import ChunkRepositoryPort, DocumentRepositoryPort
from knowledge_service.domain.models import (
    ChunkFilter,
    KnowledgeChunk,
    KnowledgeDocument,
    NewChunk,
    SimilarityQuery,
    content_hash,
    materialize_chunks,
    utc_now,
)
from knowledge_service.domain.ranking import rank_matches
from shared.schemas.documents import ChunkingMethod, ChunkStats, RetrievedChunk

logger = structlog.get_logger(__name__)


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Row-wise cosine similarity. Rows or queries with zero norm score 0."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    scores = np.zeros_like(dots)
    np.divide(dots, norms, out=scores, where=norms > 0)
    return scores


class InMemoryDocumentRepository(DocumentRepositoryPort):
    def __init__(self) -> None:
        self._documents: dict[UUID, KnowledgeDocument] = {}

    async def save(self, document: KnowledgeDocument) -> None:
        if document.document_id in self._documents:
            raise PersistenceError("save_document", "document already exists", document.document_id)
        self._documents[document.document_id] = document

    async def get(self, document_id: UUID, tenant_id: str) -> KnowledgeDocument | None:
        document = self._documents.get(document_id)
        if document is None or document.tenant_id != tenant_id:
            return None
        return document

    async def list_documents(self, tenant_id: str) -> list[KnowledgeDocument]:
        documents = [doc for doc in self._documents.values() if doc.tenant_id == tenant_id]
        return sorted(documents, key=lambda doc: doc.created_at, reverse=True)

    async def update_chunking_method(self, document_id: UUID, method: ChunkingMethod) -> None:
        document = self._documents.get(document_id)
        if document is not None:
            self._documents[document_id] = document.model_copy(
                update={"chunking_method": method, "updated_at": utc_now()}
            )

    async def delete(self, document_id: UUID, tenant_id: str) -> bool:
        if await self.get(document_id, tenant_id) is None:
            return False
        del self._documents[document_id]
        return True


class InMemoryChunkRepository(ChunkRepositoryPort):
    def __init__(self) -> None:
        # document_id -> chunks ordered by sequence
        self._chunks: dict[UUID, list[KnowledgeChunk]] = {}

    def _all_chunks(self) -> list[KnowledgeChunk]:
        return [chunk for chunks in self._chunks.values() for chunk in chunks]

    def _locate(self, chunk_id: UUID, tenant_id: str) -> tuple[list[KnowledgeChunk], int]:
        for chunks in self._chunks.values():
            for position, chunk in enumerate(chunks):
                if chunk.chunk_id == chunk_id and chunk.tenant_id == tenant_id:
                    return chunks, position
        raise ChunkNotFoundError(chunk_id)

    def _replace_at(self, chunk_id: UUID, tenant_id: str, **changes: object) -> KnowledgeChunk:
        chunks, position = self._locate(chunk_id, tenant_id)
        updated = chunks[position].model_copy(update={**changes, "updated_at": utc_now()})
        chunks[position] = updated
        return updated

    async def bulk_insert(
        self, document: KnowledgeDocument, chunks: list[NewChunk]
    ) -> list[KnowledgeChunk]:
        if self._chunks.get(document.document_id):
            raise PersistenceError(
                "bulk_insert",
                "document already has chunks; use replace_all",
                document.document_id,
            )
        rows = materialize_chunks(document, chunks, first_sequence=1)
        self._chunks[document.document_id] = rows
        logger.info(
            "repository.chunks.inserted",
            document_id=str(document.document_id),
            chunk_count=len(rows),
        )
        return list(rows)

    async def replace_all(
        self, document: KnowledgeDocument, chunks: list[NewChunk]
    ) -> list[KnowledgeChunk]:
        rows = materialize_chunks(document, chunks, first_sequence=1)
        previous = self._chunks.get(document.document_id, [])
        self._chunks[document.document_id] = rows
        logger.info(
            "repository.chunks.replaced",
            document_id=str(document.document_id),
            deleted_count=len(previous),
            chunk_count=len(rows),
        )
        return list(rows)

    async def append(self, document: KnowledgeDocument, chunk: NewChunk) -> KnowledgeChunk:
        existing = self._chunks.setdefault(document.document_id, [])
        next_sequence = existing[-1].sequence + 1 if existing else 1
        (row,) = materialize_chunks(document, [chunk], first_sequence=next_sequence)
        existing.append(row)
        return row

    async def get(self, chunk_id: UUID, tenant_id: str) -> KnowledgeChunk | None:
        try:
            chunks, position = self._locate(chunk_id, tenant_id)
        except ChunkNotFoundError:
            return None
        return chunks[position]

    async def update_content(self, chunk_id: UUID, tenant_id: str, content: str) -> KnowledgeChunk:
        # model_copy skips validators.
        if not content.strip():
            raise InvalidChunkContentError(chunk_id)
        return self._replace_at(chunk_id, tenant_id, content=content)

    async def update_embedding(
        self,
        chunk_id: UUID,
        tenant_id: str,
        embedding: list[float],
        embedded_content: str,
    ) -> KnowledgeChunk:
        chunks, position = self._locate(chunk_id, tenant_id)
        metadata = {
            key: value
            for key, value in chunks[position].metadata.items()
            if key not in ("needs_reembedding", "embedding_error")
        }
        return self._replace_at(
            chunk_id,
            tenant_id,
            embedding=list(embedding),
            embedded_content_hash=content_hash(embedded_content),
            metadata=metadata,
        )

    async def set_enabled(self, chunk_id: UUID, tenant_id: str, enabled: bool) -> KnowledgeChunk:
        return self._replace_at(chunk_id, tenant_id, enabled=enabled)

    async def delete(self, chunk_id: UUID, tenant_id: str) -> None:
        chunks, position = self._locate(chunk_id, tenant_id)
        del chunks[position]

    async def delete_all(self, document_id: UUID) -> int:
        return len(self._chunks.pop(document_id, []))

    async def list_chunks(
        self, document_id: UUID, chunk_filter: ChunkFilter | None = None
    ) -> list[KnowledgeChunk]:
        chunk_filter = chunk_filter or ChunkFilter()
        return [chunk for chunk in self._chunks.get(document_id, []) if chunk_filter.matches(chunk)]

    async def count(self, document_id: UUID) -> int:
        return len(self._chunks.get(document_id, []))

    def _scoped(self, tenant_id: str, document_id: UUID | None) -> list[KnowledgeChunk]:
        if document_id is not None:
            candidates = self._chunks.get(document_id, [])
        else:
            candidates = self._all_chunks()
        return [chunk for chunk in candidates if chunk.tenant_id == tenant_id]

    async def list_needing_embedding(
        self, tenant_id: str, document_id: UUID | None = None
    ) -> list[KnowledgeChunk]:
        return [chunk for chunk in self._scoped(tenant_id, document_id) if chunk.needs_embedding]

    async def stats(self, tenant_id: str, document_id: UUID | None = None) -> ChunkStats:
        chunks = self._scoped(tenant_id, document_id)
        enabled = sum(1 for chunk in chunks if chunk.enabled)
        return ChunkStats(
            total_chunks=len(chunks),
            enabled_chunks=enabled,
            disabled_chunks=len(chunks) - enabled,
            missing_embedding_chunks=sum(1 for chunk in chunks if chunk.embedding is None),
            stale_embedding_chunks=sum(1 for chunk in chunks if chunk.embedding_stale),
        )

    async def match_chunks(self, query: SimilarityQuery) -> list[RetrievedChunk]:
        allowed = set(query.document_ids) if query.document_ids else None
        candidates = [
            chunk
            for chunk in self._all_chunks()
            if chunk.tenant_id == query.tenant_id
            and chunk.enabled
            and chunk.embedding is not None
            and (allowed is None or chunk.document_id in allowed)
            and (query.include_stale or not chunk.embedding_stale)
        ]
        if not candidates:
            return []

        dimensions = len(query.query_embedding)
        mismatched = [chunk for chunk in candidates if len(chunk.embedding or []) != dimensions]
        if mismatched:
            raise RetrievalError(
                f"query has {dimensions} dimensions, stored embeddings have "
                f"{len(mismatched[0].embedding or [])}",
                invalid_input=True,
            )

        matrix = np.asarray([chunk.embedding for chunk in candidates], dtype=np.float64)
        scores = cosine_similarities(matrix, np.asarray(query.query_embedding, dtype=np.float64))
        return rank_matches(
            zip((float(score) for score in scores), candidates),
            threshold=query.threshold,
            top_k=query.top_k,
        )
