from shared.schemas.base import HealthResponse, ErrorResponse
from shared.schemas.documents import (
    ChunkingMethod,
    ChunkMetadata,
    ChunkStats,
    DocumentMetadata,
    IngestionState,
    RetrievedChunk,
)

__all__ = [
    "HealthResponse",
    "ErrorResponse",
    "ChunkingMethod",
    "ChunkMetadata",
    "ChunkStats",
    "DocumentMetadata",
    "IngestionState",
    "RetrievedChunk",
]
