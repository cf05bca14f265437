from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from uuid import UUID

from pydantic import Field

from shared.events.base import BaseEvent


class DocumentChunkedEvent(BaseEvent):
    """Emitted by knowledge_service after a document's chunks are persisted.

    Consumed by: agent configuration sync, audit handlers.
    Topic: knowledge.document.chunked
    Partition key: tenant_id

    Example payload:
    {
        "event_id": "6ba7b810-9dad-11d1-80b4-00c04fd430c8",
        "event_type": "knowledge.document.chunked",
        "correlation_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
        "tenant_id": "tenant_acme",
        "schema_version": "1.0",
        "timestamp_utc": "2026-02-27T15:01:42.000Z",
        "chunked_at": "2026-02-27T15:01:42.000Z",
        "document_id": "a3bb189e-8bf9-3888-9912-ace4e6543002",
        "session_id": "0f8fad5b-d9cb-469f-a165-70867728950e",
        "chunk_count": 10,
        "embedded_count": 8,
        "chunking_method": "paragraph",
        "embedding_model": "text-embedding-ada-002"
    }
    """

    event_type: Literal["knowledge.document.chunked"] = Field(
        default="knowledge.document.chunked",
        description="Discriminator field, always 'knowledge.document.chunked'.",
    )
    chunked_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Timestamp when the ingestion reached DONE.",
    )
    document_id: UUID = Field(description="Identifier of the ingested document.")
    session_id: UUID = Field(description="Identifier of the ingestion session.")
    chunk_count: int = Field(ge=1, description="Number of chunks persisted for the document.")
    embedded_count: int = Field(ge=0, description="Number of persisted chunks carrying an embedding.")
    chunking_method: str = Field(description="Chunking method that produced the chunks.")
    embedding_model: str = Field(description="Embedding model or deployment used.")

    @property
    def topic(self) -> str:
        return "knowledge.document.chunked"


class DocumentIngestionFailedEvent(BaseEvent):
    """Emitted by knowledge_service when an ingestion session ends in FAILED.

    Consumed by: audit handlers, alerting.
    Topic: knowledge.document.ingestion_failed
    Partition key: tenant_id

    Example payload:
    {
        "event_id": "6ba7b811-9dad-11d1-80b4-00c04fd430c8",
        "event_type": "knowledge.document.ingestion_failed",
        "correlation_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
        "tenant_id": "tenant_acme",
        "schema_version": "1.0",
        "timestamp_utc": "2026-02-27T15:01:55.000Z",
        "document_id": "a3bb189e-8bf9-3888-9912-ace4e6543002",
        "session_id": "0f8fad5b-d9cb-469f-a165-70867728950e",
        "failed_state": "embedding",
        "error_code": "EMBEDDING_API_UNAVAILABLE",
        "error_message": "Embedding provider unavailable for chunk 3 after 3 attempts."
    }
    """

    event_type: Literal["knowledge.document.ingestion_failed"] = Field(
        default="knowledge.document.ingestion_failed",
        description="Discriminator field, always 'knowledge.document.ingestion_failed'.",
    )
    document_id: UUID = Field(description="Identifier of the document that failed ingestion.")
    session_id: UUID = Field(description="Identifier of the ingestion session.")
    failed_state: str = Field(description="Ingestion state in which the failure occurred.")
    error_code: str = Field(description="Machine-readable error code for programmatic handling.")
    error_message: str = Field(description="Human-readable description of the failure cause.")

    @property
    def topic(self) -> str:
        return "knowledge.document.ingestion_failed"
