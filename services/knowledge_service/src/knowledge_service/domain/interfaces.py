from __future__ import annotations

from abc import ABC, abstractmethod
from uuid import UUID

from knowledge_service.domain.chunking import ChunkingOptions
from knowledge_service.domain.models import (
    ChunkFilter,
    ChunkingOutcome,
    KnowledgeChunk,
    KnowledgeDocument,
    NewChunk,
    SimilarityQuery,
)
from shared.events.base import BaseEvent
from shared.schemas.documents import ChunkingMethod, ChunkStats, RetrievedChunk


class EmbeddingPort(ABC):
    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier of the embedding model or deployment."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed one text with exactly one provider call per attempt. Raises EmbeddingError."""


class ChunkerPort(ABC):
    @abstractmethod
    async def chunk(self, content: str, options: ChunkingOptions) -> ChunkingOutcome:
        """Split content into ordered chunks."""


class DocumentRepositoryPort(ABC):
    @abstractmethod
    async def save(self, document: KnowledgeDocument) -> None:
        """Persist a new document record."""

    @abstractmethod
    async def get(self, document_id: UUID, tenant_id: str) -> KnowledgeDocument | None:
        """Retrieve a document scoped to tenant."""

    @abstractmethod
    async def list_documents(self, tenant_id: str) -> list[KnowledgeDocument]:
        """All documents of a tenant, newest first."""

    @abstractmethod
    async def update_chunking_method(self, document_id: UUID, method: ChunkingMethod) -> None:
        """Record the strategy last used to (re)generate the document's chunks."""

    @abstractmethod
    async def delete(self, document_id: UUID, tenant_id: str) -> bool:
        """Delete a document. Returns False when it did not exist."""


class ChunkRepositoryPort(ABC):
    @abstractmethod
    async def bulk_insert(
        self, document: KnowledgeDocument, chunks: list[NewChunk]
    ) -> list[KnowledgeChunk]:
        """Insert chunks with sequence numbers 1..N in input order."""

    @abstractmethod
    async def replace_all(
        self, document: KnowledgeDocument, chunks: list[NewChunk]
    ) -> list[KnowledgeChunk]:
        """Delete every chunk of the document, then insert the new set."""

    @abstractmethod
    async def append(self, document: KnowledgeDocument, chunk: NewChunk) -> KnowledgeChunk:
        """Insert one chunk after the document's current last sequence."""

    @abstractmethod
    async def get(self, chunk_id: UUID, tenant_id: str) -> KnowledgeChunk | None:
        """Retrieve one chunk scoped to tenant."""

    @abstractmethod
    async def update_content(self, chunk_id: UUID, tenant_id: str, content: str) -> KnowledgeChunk:
        """Replace content and updated_at. The embedding is left untouched."""

    @abstractmethod
    async def update_embedding(
        self,
        chunk_id: UUID,
        tenant_id: str,
        embedding: list[float],
        embedded_content: str,
    ) -> KnowledgeChunk:
        """Store a vector together with the hash of the text it was computed from."""

    @abstractmethod
    async def set_enabled(self, chunk_id: UUID, tenant_id: str, enabled: bool) -> KnowledgeChunk:
        """Toggle retrieval eligibility."""

    @abstractmethod
    async def delete(self, chunk_id: UUID, tenant_id: str) -> None:
        """Delete one chunk. Raises ChunkNotFoundError when absent."""

    @abstractmethod
    async def delete_all(self, document_id: UUID) -> int:
        """Delete every chunk of a document. Returns the number deleted."""

    @abstractmethod
    async def list_chunks(
        self, document_id: UUID, chunk_filter: ChunkFilter | None = None
    ) -> list[KnowledgeChunk]:
        """Chunks of a document ordered by ascending sequence."""

    @abstractmethod
    async def count(self, document_id: UUID) -> int:
        """Number of stored chunks for a document."""

    @abstractmethod
    async def list_needing_embedding(
        self, tenant_id: str, document_id: UUID | None = None
    ) -> list[KnowledgeChunk]:
        """Chunks whose embedding is missing or stale."""

    @abstractmethod
    async def stats(self, tenant_id: str, document_id: UUID | None = None) -> ChunkStats:
        """Chunk counts by enabled/embedding state."""

    @abstractmethod
    async def match_chunks(self, query: SimilarityQuery) -> list[RetrievedChunk]:
        """Top-K enabled chunks at or above threshold, by descending cosine similarity."""


class EventPublisherPort(ABC):
    @abstractmethod
    async def publish(self, event: BaseEvent) -> None:
        """Emit an event to the event bus."""
