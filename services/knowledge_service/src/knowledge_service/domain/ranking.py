from __future__ import annotations

from collections.abc import Iterable

from knowledge_service.domain.models import KnowledgeChunk
from shared.schemas.documents import RetrievedChunk


def rank_matches(
    scored: Iterable[tuple[float, KnowledgeChunk]],
    threshold: float,
    top_k: int,
) -> list[RetrievedChunk]:
    """Keep scores at or above threshold, best first, ties by ascending sequence."""
    eligible = [(score, chunk) for score, chunk in scored if score >= threshold]
    eligible.sort(key=lambda item: (-item[0], item[1].sequence, str(item[1].chunk_id)))

    return [
        RetrievedChunk(
            chunk_id=chunk.chunk_id,
            document_id=chunk.document_id,
            content=chunk.content,
            sequence=chunk.sequence,
            similarity_score=min(1.0, score),
        )
        for score, chunk in eligible[:top_k]
    ]
