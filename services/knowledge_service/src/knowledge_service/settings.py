from __future__ import annotations

from typing import Literal

from pydantic import Field
from shared.config.base import BaseServiceSettings


class Settings(BaseServiceSettings):
    service_name: str = "knowledge_service"

    # Embedding calls
    embedding_timeout_seconds: float = Field(default=20.0, gt=0.0, le=120.0)
    embedding_max_attempts: int = Field(default=3, ge=1, le=10)
    embedding_retry_wait_initial: float = Field(default=1.0, ge=0.0)
    embedding_retry_wait_max: float = Field(default=10.0, ge=0.0)
    embedding_concurrency: int = Field(default=4, ge=1, le=32)
    embedding_failure_policy: Literal["abort", "persist_null"] = "abort"

    # Ingestion
    ingestion_timeout_seconds: float = Field(default=600.0, gt=0.0)
    ai_chunking_context_limit: int = Field(default=10000, ge=1000)
    ai_chunking_timeout_seconds: float = Field(default=60.0, gt=0.0, le=300.0)

    # Retrieval
    retrieval_similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    retrieval_top_k: int = Field(default=5, ge=1, le=50)
    retrieval_include_stale: bool = Field(default=False)
