from __future__ import annotations

from typing import Any
from uuid import UUID


class KnowledgeBaseError(Exception):
    def __init__(
        self,
        message: str,
        error_code: str,
        document_id: UUID | None = None,
        chunk_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.document_id = document_id
        self.chunk_index = chunk_index
        self.details: dict[str, Any] | None = None


class DocumentNotFoundError(KnowledgeBaseError):
    def __init__(self, document_id: UUID) -> None:
        super().__init__(
            message=f"Document '{document_id}' does not exist.",
            error_code="DOCUMENT_NOT_FOUND",
            document_id=document_id,
        )


class ChunkNotFoundError(KnowledgeBaseError):
    def __init__(self, chunk_id: UUID) -> None:
        super().__init__(
            message=f"Chunk '{chunk_id}' does not exist.",
            error_code="CHUNK_NOT_FOUND",
        )
        self.chunk_id = chunk_id


class InvalidChunkContentError(KnowledgeBaseError):
    def __init__(self, chunk_id: UUID) -> None:
        super().__init__(
            message="Chunk content must not be empty or whitespace-only.",
            error_code="INVALID_CHUNK_CONTENT",
        )
        self.chunk_id = chunk_id


class SplitError(KnowledgeBaseError):
    def __init__(self, method: str, document_id: UUID | None = None) -> None:
        super().__init__(
            message=f"No chunks generated using method '{method}'.",
            error_code="NO_CHUNKS_GENERATED",
            document_id=document_id,
        )
        self.method = method


class ChunkingError(KnowledgeBaseError):
    """Remote chunker failure. Absorbed by the paragraph fallback."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            message=f"AI-assisted chunking failed: {detail}",
            error_code="AI_CHUNKING_FAILED",
        )


class EmbeddingError(KnowledgeBaseError):
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str = "EMBEDDING_ERROR",
        chunk_index: int | None = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, chunk_index=chunk_index)

    def record_batch(self, failed_chunk_indices: list[int], total_chunks: int) -> None:
        """Attach the outcome of the document-wide embedding pass this error aborted."""
        self.details = {
            "inserted_count": 0,
            "total_chunks": total_chunks,
            "failed_count": len(failed_chunk_indices),
            "failed_chunk_indices": failed_chunk_indices,
        }

    def __str__(self) -> str:
        message = super().__str__()
        if self.details is None:
            return message
        return (
            f"{message} (inserted 0 of {self.details['total_chunks']} chunks, "
            f"{self.details['failed_count']} failed embedding)"
        )


class EmptyEmbeddingInputError(EmbeddingError):
    def __init__(self) -> None:
        super().__init__(
            message="Cannot embed empty or whitespace-only text.",
            error_code="EMBEDDING_EMPTY_INPUT",
        )


class EmbeddingTimeoutError(EmbeddingError):
    retryable = True

    def __init__(self, detail: str) -> None:
        super().__init__(f"Embedding request timed out: {detail}", "EMBEDDING_TIMEOUT")


class EmbeddingRateLimitError(EmbeddingError):
    retryable = True

    def __init__(self, detail: str) -> None:
        super().__init__(f"Embedding provider rate limit hit: {detail}", "EMBEDDING_RATE_LIMITED")


class EmbeddingProviderUnavailableError(EmbeddingError):
    retryable = True

    def __init__(self, detail: str) -> None:
        super().__init__(f"Embedding provider unavailable: {detail}", "EMBEDDING_API_UNAVAILABLE")


class EmbeddingAuthError(EmbeddingError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Embedding provider rejected credentials: {detail}", "EMBEDDING_AUTH_FAILED")


class EmbeddingRequestError(EmbeddingError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Embedding request rejected: {detail}", "EMBEDDING_REQUEST_REJECTED")


class MalformedEmbeddingResponseError(EmbeddingError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Malformed embedding response: {detail}", "EMBEDDING_MALFORMED_RESPONSE")


class PersistenceError(KnowledgeBaseError):
    def __init__(
        self,
        operation: str,
        detail: str,
        document_id: UUID | None = None,
        partial: bool = False,
    ) -> None:
        message = f"Chunk store operation '{operation}' failed: {detail}"
        if partial:
            message += " (store may hold a partial result; re-verify chunk counts)"
        super().__init__(message=message, error_code="PERSISTENCE_ERROR", document_id=document_id)
        self.operation = operation
        self.partial = partial


class RetrievalError(KnowledgeBaseError):
    def __init__(self, detail: str, invalid_input: bool = False) -> None:
        super().__init__(
            message=f"Similarity search failed: {detail}",
            error_code="INVALID_QUERY_VECTOR" if invalid_input else "RETRIEVAL_ERROR",
        )
        self.invalid_input = invalid_input


class IngestionTimeoutError(KnowledgeBaseError):
    def __init__(self, document_id: UUID, timeout_seconds: float) -> None:
        super().__init__(
            message=f"Ingestion exceeded {timeout_seconds:.0f}s budget.",
            error_code="INGESTION_TIMEOUT",
            document_id=document_id,
        )
