from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ChunkingMethod(StrEnum):
    LINE_BREAK = "line_break"
    PARAGRAPH = "paragraph"
    PAGE = "page"
    HEADER = "header"
    FIXED_SIZE = "fixed_size"
    AI_ASSISTED = "ai_assisted"


class IngestionState(StrEnum):
    IDLE = "idle"
    SPLITTING = "splitting"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class DocumentMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: UUID
    tenant_id: str
    title: str
    file_type: str
    source_path: str | None = None
    chunking_method: ChunkingMethod | None = None
    content_length: int
    created_at: datetime
    updated_at: datetime


class ChunkMetadata(BaseModel):
    """Public view of a stored chunk. The vector itself is never exposed."""

    model_config = ConfigDict(frozen=True)

    chunk_id: UUID
    document_id: UUID
    content: str
    sequence: int = Field(ge=1)
    metadata: dict[str, Any]
    enabled: bool
    has_embedding: bool
    embedding_stale: bool
    created_at: datetime
    updated_at: datetime


class RetrievedChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk_id: UUID
    document_id: UUID
    content: str
    sequence: int
    similarity_score: float = Field(ge=0.0, le=1.0)


class ChunkStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_chunks: int = 0
    enabled_chunks: int = 0
    disabled_chunks: int = 0
    missing_embedding_chunks: int = 0
    stale_embedding_chunks: int = 0

    @property
    def is_empty(self) -> bool:
        return self.total_chunks == 0
