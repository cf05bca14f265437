from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, Header, Request

from knowledge_service.domain.services import (
    ChunkingService,
    IngestionOrchestrator,
    KnowledgeBaseService,
    RetrievalService,
)
from shared.logging.config import bind_request_context


@dataclass(frozen=True)
class ServiceContainer:
    """Everything the routes need, built once in the app lifespan."""

    knowledge: KnowledgeBaseService
    ingestion: IngestionOrchestrator
    retrieval: RetrievalService
    chunking: ChunkingService
    chunk_store: str
    embedding_model: str


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_knowledge_service(container: ServiceContainer = Depends(get_container)) -> KnowledgeBaseService:
    return container.knowledge


def get_ingestion_orchestrator(
    container: ServiceContainer = Depends(get_container),
) -> IngestionOrchestrator:
    return container.ingestion


def get_retrieval_service(container: ServiceContainer = Depends(get_container)) -> RetrievalService:
    return container.retrieval


def get_chunking_service(container: ServiceContainer = Depends(get_container)) -> ChunkingService:
    return container.chunking


def get_correlation_id(
    x_correlation_id: str | None = Header(default=None, alias="X-Correlation-ID"),
) -> uuid.UUID:
    try:
        return uuid.UUID(x_correlation_id) if x_correlation_id else uuid.uuid4()
    except ValueError:
        return uuid.uuid4()


def get_tenant_id(
    x_tenant_id: str = Header(..., alias="X-Tenant-ID", min_length=1, max_length=255),
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
    correlation_id: uuid.UUID = Depends(get_correlation_id),
) -> str:
    bind_request_context(correlation_id=str(correlation_id), user_id=x_user_id, tenant_id=x_tenant_id)
    return x_tenant_id
