from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from knowledge_service.domain.exceptions import (
    ChunkNotFoundError,
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
)
from shared.schemas.documents import ChunkingMethod, ChunkStats, RetrievedChunk

logger = structlog.get_logger(__name__)

_CHUNK_COLUMNS = """
    id, document_id, tenant_id, content, sequence,
    embedding::text AS embedding, embedded_content_hash,
    metadata, enabled, created_at, updated_at
"""


def _current_hash(column: str = "content") -> str:
    """SQL for the hash of a row's current content, comparable with embedded_content_hash."""
    return f"encode(sha256(convert_to({column}, 'UTF8')), 'hex')"


def build_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    return create_async_engine(database_url, pool_size=pool_size, max_overflow=max_overflow)


def _vector_literal(values: list[float]) -> str:
    return "[" + ",".join(str(v) for v in values) + "]"


def _json_value(value: Any) -> Any:
    # asyncpg hands back json/jsonb and vector::text as strings.
    return json.loads(value) if isinstance(value, str) else value


def _row_to_document(row: Mapping[str, Any]) -> KnowledgeDocument:
    return KnowledgeDocument(
        document_id=row["id"],
        tenant_id=row["tenant_id"],
        title=row["title"],
        content=row["content"],
        file_type=row["file_type"],
        source_path=row["source_path"],
        chunking_method=row["chunking_method"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: Mapping[str, Any]) -> KnowledgeChunk:
    return KnowledgeChunk(
        chunk_id=row["id"],
        document_id=row["document_id"],
        tenant_id=row["tenant_id"],
        content=row["content"],
        sequence=row["sequence"],
        embedding=_json_value(row["embedding"]),
        embedded_content_hash=row["embedded_content_hash"],
        metadata=_json_value(row["metadata"]) or {},
        enabled=row["enabled"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _chunk_params(chunk: KnowledgeChunk) -> dict[str, Any]:
    return {
        "id": chunk.chunk_id,
        "document_id": chunk.document_id,
        "tenant_id": chunk.tenant_id,
        "content": chunk.content,
        "sequence": chunk.sequence,
        "embedding": _vector_literal(chunk.embedding) if chunk.embedding is not None else None,
        "embedded_content_hash": chunk.embedded_content_hash,
        "metadata": json.dumps(chunk.metadata, default=str),
        "enabled": chunk.enabled,
        "created_at": chunk.created_at,
        "updated_at": chunk.updated_at,
    }


_INSERT_CHUNK_SQL = text("""
    INSERT INTO knowledge_chunks (
        id, document_id, tenant_id, content, sequence,
        embedding, embedded_content_hash, metadata,
        enabled, created_at, updated_at
    ) VALUES (
        :id, :document_id, :tenant_id, :content, :sequence,
        CAST(:embedding AS vector), :embedded_content_hash, CAST(:metadata AS jsonb),
        :enabled, :created_at, :updated_at
    )
""")

# Serializes writers of one document for the rest of the transaction.
_LOCK_DOCUMENT_SQL = text("SELECT pg_advisory_xact_lock(hashtext(CAST(:document_id AS text)))")

_CHUNKS_EXIST_SQL = text(
    "SELECT EXISTS (SELECT 1 FROM knowledge_chunks WHERE document_id = :document_id)"
)


class PostgresDocumentRepository(DocumentRepositoryPort):
    def __init__(self, engine: AsyncEngine) -> None:
        self._session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def save(self, document: KnowledgeDocument) -> None:
        sql = text("""
            INSERT INTO knowledge_documents (
                id, tenant_id, title, content, file_type,
                source_path, chunking_method, created_at, updated_at
            ) VALUES (
                :id, :tenant_id, :title, :content, :file_type,
                :source_path, :chunking_method, :created_at, :updated_at
            )
        """)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    sql,
                    {
                        "id": document.document_id,
                        "tenant_id": document.tenant_id,
                        "title": document.title,
                        "content": document.content,
                        "file_type": document.file_type,
                        "source_path": document.source_path,
                        "chunking_method": document.chunking_method,
                        "created_at": document.created_at,
                        "updated_at": document.updated_at,
                    },
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("save_document", str(exc), document.document_id) from exc

        logger.info("repository.document.saved", document_id=str(document.document_id))

    async def get(self, document_id: UUID, tenant_id: str) -> KnowledgeDocument | None:
        sql = text("""
            SELECT id, tenant_id, title, content, file_type, source_path,
                   chunking_method, created_at, updated_at
            FROM knowledge_documents
            WHERE id = :id AND tenant_id = :tenant_id
        """)
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, {"id": document_id, "tenant_id": tenant_id})
                row = result.mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError("get_document", str(exc), document_id) from exc
        return _row_to_document(row) if row else None

    async def list_documents(self, tenant_id: str) -> list[KnowledgeDocument]:
        sql = text("""
            SELECT id, tenant_id, title, content, file_type, source_path,
                   chunking_method, created_at, updated_at
            FROM knowledge_documents
            WHERE tenant_id = :tenant_id
            ORDER BY created_at DESC
        """)
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, {"tenant_id": tenant_id})
                rows = result.mappings().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("list_documents", str(exc)) from exc
        return [_row_to_document(row) for row in rows]

    async def update_chunking_method(self, document_id: UUID, method: ChunkingMethod) -> None:
        sql = text("""
            UPDATE knowledge_documents
            SET chunking_method = :method, updated_at = NOW()
            WHERE id = :id
        """)
        try:
            async with self._session_factory() as session:
                await session.execute(sql, {"id": document_id, "method": str(method)})
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("update_chunking_method", str(exc), document_id) from exc

    async def delete(self, document_id: UUID, tenant_id: str) -> bool:
        sql = text("DELETE FROM knowledge_documents WHERE id = :id AND tenant_id = :tenant_id")
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, {"id": document_id, "tenant_id": tenant_id})
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("delete_document", str(exc), document_id) from exc
        return result.rowcount > 0


class PostgresChunkRepository(ChunkRepositoryPort):
    def __init__(self, engine: AsyncEngine) -> None:
        self._session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def bulk_insert(
        self, document: KnowledgeDocument, chunks: list[NewChunk]
    ) -> list[KnowledgeChunk]:
        rows = materialize_chunks(document, chunks, first_sequence=1)
        if not rows:
            return []
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(_LOCK_DOCUMENT_SQL, {"document_id": document.document_id})
                existing = await session.execute(
                    _CHUNKS_EXIST_SQL, {"document_id": document.document_id}
                )
                if existing.scalar():
                    raise PersistenceError(
                        "bulk_insert",
                        "document already has chunks; use replace_all",
                        document.document_id,
                    )
                await session.execute(_INSERT_CHUNK_SQL, [_chunk_params(row) for row in rows])
        except SQLAlchemyError as exc:
            raise PersistenceError("bulk_insert", str(exc), document.document_id) from exc

        logger.info(
            "repository.chunks.inserted",
            document_id=str(document.document_id),
            chunk_count=len(rows),
        )
        return rows

    async def replace_all(
        self, document: KnowledgeDocument, chunks: list[NewChunk]
    ) -> list[KnowledgeChunk]:
        rows = materialize_chunks(document, chunks, first_sequence=1)
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(_LOCK_DOCUMENT_SQL, {"document_id": document.document_id})
                deleted = await session.execute(
                    text("DELETE FROM knowledge_chunks WHERE document_id = :document_id"),
                    {"document_id": document.document_id},
                )
                if rows:
                    await session.execute(_INSERT_CHUNK_SQL, [_chunk_params(row) for row in rows])
        except SQLAlchemyError as exc:
            raise PersistenceError("replace_all", str(exc), document.document_id) from exc

        logger.info(
            "repository.chunks.replaced",
            document_id=str(document.document_id),
            deleted_count=deleted.rowcount,
            chunk_count=len(rows),
        )
        return rows

    async def append(self, document: KnowledgeDocument, chunk: NewChunk) -> KnowledgeChunk:
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(_LOCK_DOCUMENT_SQL, {"document_id": document.document_id})
                result = await session.execute(
                    text("""
                        SELECT COALESCE(MAX(sequence), 0)
                        FROM knowledge_chunks
                        WHERE document_id = :document_id
                    """),
                    {"document_id": document.document_id},
                )
                (row,) = materialize_chunks(document, [chunk], first_sequence=result.scalar_one() + 1)
                await session.execute(_INSERT_CHUNK_SQL, _chunk_params(row))
        except SQLAlchemyError as exc:
            raise PersistenceError("append", str(exc), document.document_id) from exc
        return row

    async def get(self, chunk_id: UUID, tenant_id: str) -> KnowledgeChunk | None:
        sql = text(f"""
            SELECT {_CHUNK_COLUMNS}
            FROM knowledge_chunks
            WHERE id = :id AND tenant_id = :tenant_id
        """)
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, {"id": chunk_id, "tenant_id": tenant_id})
                row = result.mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError("get_chunk", str(exc)) from exc
        return _row_to_chunk(row) if row else None

    async def _update_returning(
        self,
        operation: str,
        chunk_id: UUID,
        tenant_id: str,
        assignments: str,
        params: dict[str, Any],
    ) -> KnowledgeChunk:
        sql = text(f"""
            UPDATE knowledge_chunks
            SET {assignments}, updated_at = NOW()
            WHERE id = :id AND tenant_id = :tenant_id
            RETURNING {_CHUNK_COLUMNS}
        """)
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, {"id": chunk_id, "tenant_id": tenant_id, **params})
                row = result.mappings().first()
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(operation, str(exc)) from exc
        if row is None:
            raise ChunkNotFoundError(chunk_id)
        return _row_to_chunk(row)

    async def update_content(self, chunk_id: UUID, tenant_id: str, content: str) -> KnowledgeChunk:
        return await self._update_returning(
            "update_content", chunk_id, tenant_id, "content = :content", {"content": content}
        )

    async def update_embedding(
        self,
        chunk_id: UUID,
        tenant_id: str,
        embedding: list[float],
        embedded_content: str,
    ) -> KnowledgeChunk:
        return await self._update_returning(
            "update_embedding",
            chunk_id,
            tenant_id,
            "embedding = CAST(:embedding AS vector), embedded_content_hash = :hash, "
            "metadata = metadata - 'needs_reembedding' - 'embedding_error'",
            {"embedding": _vector_literal(embedding), "hash": content_hash(embedded_content)},
        )

    async def set_enabled(self, chunk_id: UUID, tenant_id: str, enabled: bool) -> KnowledgeChunk:
        return await self._update_returning(
            "set_enabled", chunk_id, tenant_id, "enabled = :enabled", {"enabled": enabled}
        )

    async def delete(self, chunk_id: UUID, tenant_id: str) -> None:
        sql = text("DELETE FROM knowledge_chunks WHERE id = :id AND tenant_id = :tenant_id")
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, {"id": chunk_id, "tenant_id": tenant_id})
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("delete_chunk", str(exc)) from exc
        if result.rowcount == 0:
            raise ChunkNotFoundError(chunk_id)

    async def delete_all(self, document_id: UUID) -> int:
        sql = text("DELETE FROM knowledge_chunks WHERE document_id = :document_id")
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, {"document_id": document_id})
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("delete_all", str(exc), document_id) from exc
        return result.rowcount

    async def list_chunks(
        self, document_id: UUID, chunk_filter: ChunkFilter | None = None
    ) -> list[KnowledgeChunk]:
        chunk_filter = chunk_filter or ChunkFilter()
        conditions = ["document_id = :document_id"]
        params: dict[str, Any] = {"document_id": document_id}
        if chunk_filter.enabled_only:
            conditions.append("enabled")
        if chunk_filter.search_text:
            conditions.append("strpos(lower(content), lower(:search_text)) > 0")
            params["search_text"] = chunk_filter.search_text

        sql = text(f"""
            SELECT {_CHUNK_COLUMNS}
            FROM knowledge_chunks
            WHERE {" AND ".join(conditions)}
            ORDER BY sequence ASC
        """)
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, params)
                rows = result.mappings().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("list_chunks", str(exc), document_id) from exc
        return [_row_to_chunk(row) for row in rows]

    async def count(self, document_id: UUID) -> int:
        sql = text("SELECT COUNT(*) FROM knowledge_chunks WHERE document_id = :document_id")
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, {"document_id": document_id})
                return result.scalar_one()
        except SQLAlchemyError as exc:
            raise PersistenceError("count", str(exc), document_id) from exc

    async def list_needing_embedding(
        self, tenant_id: str, document_id: UUID | None = None
    ) -> list[KnowledgeChunk]:
        params: dict[str, Any] = {"tenant_id": tenant_id}
        document_clause = ""
        if document_id is not None:
            document_clause = "AND document_id = :document_id"
            params["document_id"] = document_id

        sql = text(f"""
            SELECT {_CHUNK_COLUMNS}
            FROM knowledge_chunks
            WHERE tenant_id = :tenant_id {document_clause}
              AND (embedding IS NULL OR embedded_content_hash IS DISTINCT FROM {_current_hash()})
            ORDER BY document_id, sequence
        """)
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, params)
                rows = result.mappings().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("list_needing_embedding", str(exc), document_id) from exc
        return [_row_to_chunk(row) for row in rows]

    async def stats(self, tenant_id: str, document_id: UUID | None = None) -> ChunkStats:
        params: dict[str, Any] = {"tenant_id": tenant_id}
        document_clause = ""
        if document_id is not None:
            document_clause = "AND document_id = :document_id"
            params["document_id"] = document_id

        sql = text(f"""
            SELECT
                COUNT(*) AS total_chunks,
                COUNT(*) FILTER (WHERE enabled) AS enabled_chunks,
                COUNT(*) FILTER (WHERE NOT enabled) AS disabled_chunks,
                COUNT(*) FILTER (WHERE embedding IS NULL) AS missing_embedding_chunks,
                COUNT(*) FILTER (
                    WHERE embedding IS NOT NULL
                      AND embedded_content_hash IS DISTINCT FROM {_current_hash()}
                ) AS stale_embedding_chunks
            FROM knowledge_chunks
            WHERE tenant_id = :tenant_id {document_clause}
        """)
        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, params)
                row = result.mappings().one()
        except SQLAlchemyError as exc:
            raise PersistenceError("stats", str(exc), document_id) from exc
        return ChunkStats(**row)

    async def match_chunks(self, query: SimilarityQuery) -> list[RetrievedChunk]:
        params: dict[str, Any] = {
            "embedding": _vector_literal(query.query_embedding),
            "tenant_id": query.tenant_id,
            "threshold": query.threshold,
            "top_k": query.top_k,
        }
        filters = ""
        if query.document_ids:
            filters += " AND kc.document_id = ANY(:document_ids)"
            params["document_ids"] = list(query.document_ids)
        if not query.include_stale:
            filters += f" AND kc.embedded_content_hash = {_current_hash('kc.content')}"

        sql = text(f"""
            SELECT * FROM (
                SELECT
                    kc.id AS chunk_id,
                    kc.document_id,
                    kc.content,
                    kc.sequence,
                    COALESCE(
                        NULLIF(1 - (kc.embedding <=> CAST(:embedding AS vector)), CAST('NaN' AS float8)),
                        0
                    ) AS similarity_score
                FROM knowledge_chunks kc
                WHERE kc.tenant_id = :tenant_id
                  AND kc.enabled
                  AND kc.embedding IS NOT NULL
                  {filters}
            ) scored
            WHERE similarity_score >= :threshold
            ORDER BY similarity_score DESC, sequence ASC, chunk_id
            LIMIT :top_k
        """)

        try:
            async with self._session_factory() as session:
                result = await session.execute(sql, params)
                rows = result.mappings().all()
        except SQLAlchemyError as exc:
            logger.error("repository.match_chunks.failed", tenant_id=query.tenant_id, error=str(exc))
            raise RetrievalError(str(exc)) from exc

        return [
            RetrievedChunk(
                chunk_id=row["chunk_id"],
                document_id=row["document_id"],
                content=row["content"],
                sequence=row["sequence"],
                similarity_score=min(1.0, max(0.0, float(row["similarity_score"]))),
            )
            for row in rows
        ]
