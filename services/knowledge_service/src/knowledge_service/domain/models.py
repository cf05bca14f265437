from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any, ClassVar, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from knowledge_service.domain.chunking import ChunkingOptions, ParagraphOptions
from knowledge_service.domain.exceptions import KnowledgeBaseError
from shared.schemas.documents import (
    ChunkingMethod,
    ChunkMetadata,
    DocumentMetadata,
    IngestionState,
    RetrievedChunk,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("content must not be empty or whitespace-only")
    return value


class KnowledgeDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: UUID = Field(default_factory=uuid4)
    tenant_id: str = Field(min_length=1, max_length=255)
    title: str = Field(min_length=1, max_length=500)
    content: str = ""
    file_type: Literal["text", "pdf"] = "text"
    source_path: str | None = None
    chunking_method: ChunkingMethod | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_metadata(self) -> DocumentMetadata:
        return DocumentMetadata(
            document_id=self.document_id,
            tenant_id=self.tenant_id,
            title=self.title,
            file_type=self.file_type,
            source_path=self.source_path,
            chunking_method=self.chunking_method,
            content_length=len(self.content),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class NewChunk(BaseModel):
    """A chunk about to be persisted. Sequence is assigned by the store."""

    model_config = ConfigDict(frozen=True)

    content: str
    embedding: list[float] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        return _require_text(value)

    @property
    def embedded_content_hash(self) -> str | None:
        return content_hash(self.content) if self.embedding is not None else None


class KnowledgeChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk_id: UUID = Field(default_factory=uuid4)
    document_id: UUID
    tenant_id: str
    content: str
    sequence: int = Field(ge=1)
    embedding: list[float] | None = None
    embedded_content_hash: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        return _require_text(value)

    @property
    def embedding_stale(self) -> bool:
        # The vector was computed from text other than the current content.
        return self.embedding is not None and self.embedded_content_hash != content_hash(self.content)

    @property
    def needs_embedding(self) -> bool:
        return self.embedding is None or self.embedding_stale

    def to_metadata(self) -> ChunkMetadata:
        return ChunkMetadata(
            chunk_id=self.chunk_id,
            document_id=self.document_id,
            content=self.content,
            sequence=self.sequence,
            metadata=self.metadata,
            enabled=self.enabled,
            has_embedding=self.embedding is not None,
            embedding_stale=self.embedding_stale,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def materialize_chunks(
    document: KnowledgeDocument, chunks: list[NewChunk], first_sequence: int
) -> list[KnowledgeChunk]:
    """Stamp new chunks with consecutive sequence numbers starting at first_sequence."""
    now = utc_now()
    return [
        KnowledgeChunk(
            document_id=document.document_id,
            tenant_id=document.tenant_id,
            content=chunk.content,
            sequence=first_sequence + offset,
            embedding=chunk.embedding,
            embedded_content_hash=chunk.embedded_content_hash,
            metadata=chunk.metadata,
            created_at=now,
            updated_at=now,
        )
        for offset, chunk in enumerate(chunks)
    ]


class ChunkFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    search_text: str | None = None
    enabled_only: bool = False

    def matches(self, chunk: KnowledgeChunk) -> bool:
        if self.enabled_only and not chunk.enabled:
            return False
        if self.search_text and self.search_text.casefold() not in chunk.content.casefold():
            return False
        return True


class SimilarityQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    query_embedding: list[float]
    threshold: float
    top_k: int
    document_ids: list[UUID] | None = None
    include_stale: bool = False


class ChunkingOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunks: list[str]
    requested_method: ChunkingMethod
    method: ChunkingMethod
    notices: list[str] = Field(default_factory=list)

    @property
    def fell_back(self) -> bool:
        return self.method != self.requested_method


class IngestionTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: IngestionState
    at: datetime = Field(default_factory=utc_now)


class IngestionSession(BaseModel):
    """Caller-owned record of one ingestion run, advanced through its states."""

    ALLOWED_TRANSITIONS: ClassVar[dict[IngestionState, frozenset[IngestionState]]] = {
        IngestionState.IDLE: frozenset({IngestionState.SPLITTING, IngestionState.FAILED}),
        IngestionState.SPLITTING: frozenset({IngestionState.EMBEDDING, IngestionState.FAILED}),
        IngestionState.EMBEDDING: frozenset({IngestionState.PERSISTING, IngestionState.FAILED}),
        IngestionState.PERSISTING: frozenset({IngestionState.DONE, IngestionState.FAILED}),
        IngestionState.DONE: frozenset(),
        IngestionState.FAILED: frozenset(),
    }

    session_id: UUID = Field(default_factory=uuid4)
    document_id: UUID
    tenant_id: str
    options: ChunkingOptions = Field(default_factory=ParagraphOptions)
    state: IngestionState = IngestionState.IDLE
    history: list[IngestionTransition] = Field(default_factory=list)
    effective_method: ChunkingMethod | None = None
    chunk_count: int = 0
    embedded_count: int = 0
    failed_chunk_indices: list[int] = Field(default_factory=list)
    notices: list[str] = Field(default_factory=list)
    failed_state: IngestionState | None = None
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def start(cls, document: KnowledgeDocument, options: ChunkingOptions) -> IngestionSession:
        return cls(document_id=document.document_id, tenant_id=document.tenant_id, options=options)

    @property
    def is_terminal(self) -> bool:
        return self.state in (IngestionState.DONE, IngestionState.FAILED)

    def transition(self, state: IngestionState) -> None:
        if state not in self.ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"Illegal ingestion transition {self.state} -> {state}")
        self.state = state
        self.history.append(IngestionTransition(state=state))

    def fail(self, error: KnowledgeBaseError) -> None:
        self.failed_state = self.state
        self.error_code = error.error_code
        self.error_message = str(error)
        self.transition(IngestionState.FAILED)


class IngestionReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: UUID
    document_id: UUID
    state: IngestionState
    chunking_method: ChunkingMethod
    total_chunks: int
    inserted_count: int
    embedded_count: int
    failed_embedding_count: int
    failed_chunk_indices: list[int] = Field(default_factory=list)
    notices: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def summary(self) -> str:
        text = f"inserted {self.inserted_count} of {self.total_chunks} chunks"
        if self.failed_embedding_count:
            text += f", {self.failed_embedding_count} failed embedding"
        return text


class ReembedReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    scanned_count: int
    updated_count: int
    failed_chunk_ids: list[UUID] = Field(default_factory=list)


# --- API request / response models ---------------------------------------


class CreateDocumentRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(min_length=1, max_length=500)
    content: str = Field(default="", max_length=5_000_000)
    file_type: Literal["text", "pdf"] = "text"
    source_path: str | None = None
    chunking: ChunkingOptions | None = None


class IngestRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunking: ChunkingOptions = Field(default_factory=ParagraphOptions)


class ChunkPreviewRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str = Field(max_length=5_000_000)
    chunking: ChunkingOptions = Field(default_factory=ParagraphOptions)


class ChunkPreviewResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunks: list[str]
    chunking_method: ChunkingMethod
    notices: list[str]


class AddChunkRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str = Field(min_length=1, max_length=100_000)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        return _require_text(value)


class UpdateChunkContentRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str = Field(min_length=1, max_length=100_000)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        return _require_text(value)


class SetChunkEnabledRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool


class ReembedRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: UUID | None = None


class SearchRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    query_embedding: list[float]
    document_ids: list[UUID] | None = None
    similarity_threshold: float | None = None
    top_k: int | None = None
    include_stale: bool | None = None


class QueryRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str = Field(min_length=1, max_length=4096)
    document_ids: list[UUID] | None = None
    similarity_threshold: float | None = None
    top_k: int | None = None


class SearchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: list[RetrievedChunk]
    has_context: bool


class DocumentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    document: DocumentMetadata
    ingestion: IngestionReport | None = None


class DeleteChunksResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: UUID
    deleted_count: int
