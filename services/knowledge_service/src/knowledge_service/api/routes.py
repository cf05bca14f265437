from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, Query, Response

from knowledge_service.api.dependencies import (
    ServiceContainer,
    get_chunking_service,
    get_container,
    get_correlation_id,
    get_ingestion_orchestrator,
    get_knowledge_service,
    get_retrieval_service,
    get_tenant_id,
)
from knowledge_service.domain.models import (
    AddChunkRequest,
    ChunkFilter,
    ChunkPreviewRequest,
    ChunkPreviewResponse,
    CreateDocumentRequest,
    DeleteChunksResponse,
    DocumentResponse,
    IngestionReport,
    IngestRequest,
    QueryRequest,
    ReembedReport,
    ReembedRequest,
    SearchRequest,
    SearchResponse,
    SetChunkEnabledRequest,
    UpdateChunkContentRequest,
)
from knowledge_service.domain.services import (
    ChunkingService,
    IngestionOrchestrator,
    KnowledgeBaseService,
    RetrievalService,
)
from knowledge_service.settings import Settings
from shared.schemas.base import HealthResponse
from shared.schemas.documents import ChunkMetadata, ChunkStats, DocumentMetadata

logger = structlog.get_logger(__name__)
router = APIRouter()
settings = Settings()


@router.get("/health", response_model=HealthResponse, tags=["ops"])
async def health(container: ServiceContainer = Depends(get_container)) -> HealthResponse:
    return HealthResponse(
        status="ok",
        service=settings.service_name,
        version=settings.app_version,
        chunk_store=container.chunk_store,
        embedding_model=container.embedding_model,
    )


# --- documents -------------------------------------------------------------


@router.post("/documents", response_model=DocumentResponse, status_code=201, tags=["documents"])
async def create_document(
    body: CreateDocumentRequest,
    tenant_id: str = Depends(get_tenant_id),
    correlation_id: uuid.UUID = Depends(get_correlation_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
    ingestion: IngestionOrchestrator = Depends(get_ingestion_orchestrator),
) -> DocumentResponse:
    document = await knowledge.create_document(tenant_id, body)

    report = None
    if body.chunking is not None:
        report = await ingestion.ingest(document, body.chunking, correlation_id=correlation_id)
        document = await knowledge.get_document(document.document_id, tenant_id)

    return DocumentResponse(document=document.to_metadata(), ingestion=report)


@router.get("/documents", response_model=list[DocumentMetadata], tags=["documents"])
async def list_documents(
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
) -> list[DocumentMetadata]:
    documents = await knowledge.list_documents(tenant_id)
    return [document.to_metadata() for document in documents]


@router.get("/documents/{document_id}", response_model=DocumentMetadata, tags=["documents"])
async def get_document(
    document_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
) -> DocumentMetadata:
    document = await knowledge.get_document(document_id, tenant_id)
    return document.to_metadata()


@router.delete("/documents/{document_id}", status_code=204, tags=["documents"])
async def delete_document(
    document_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
) -> Response:
    await knowledge.delete_document(document_id, tenant_id)
    return Response(status_code=204)


@router.post(
    "/documents/{document_id}/ingest",
    response_model=IngestionReport,
    tags=["ingestion"],
)
async def ingest_document(
    document_id: uuid.UUID,
    body: IngestRequest,
    tenant_id: str = Depends(get_tenant_id),
    correlation_id: uuid.UUID = Depends(get_correlation_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
    ingestion: IngestionOrchestrator = Depends(get_ingestion_orchestrator),
) -> IngestionReport:
    """Regenerate a document's chunks from its stored source text."""
    document = await knowledge.get_document(document_id, tenant_id)
    logger.info("ingestion.request.received", document_id=str(document_id), method=body.chunking.method)
    return await ingestion.ingest(document, body.chunking, replace=True, correlation_id=correlation_id)


# --- chunks ----------------------------------------------------------------


@router.get(
    "/documents/{document_id}/chunks",
    response_model=list[ChunkMetadata],
    tags=["chunks"],
)
async def list_chunks(
    document_id: uuid.UUID,
    search: str | None = Query(default=None, max_length=500),
    enabled_only: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
) -> list[ChunkMetadata]:
    chunks = await knowledge.list_chunks(
        document_id, tenant_id, ChunkFilter(search_text=search, enabled_only=enabled_only)
    )
    return [chunk.to_metadata() for chunk in chunks]


@router.post(
    "/documents/{document_id}/chunks",
    response_model=ChunkMetadata,
    status_code=201,
    tags=["chunks"],
)
async def add_chunk(
    document_id: uuid.UUID,
    body: AddChunkRequest,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
    ingestion: IngestionOrchestrator = Depends(get_ingestion_orchestrator),
) -> ChunkMetadata:
    document = await knowledge.get_document(document_id, tenant_id)
    chunk = await ingestion.add_chunk(document, body.content, body.metadata)
    return chunk.to_metadata()


@router.delete(
    "/documents/{document_id}/chunks",
    response_model=DeleteChunksResponse,
    tags=["chunks"],
)
async def delete_all_chunks(
    document_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
) -> DeleteChunksResponse:
    deleted = await knowledge.delete_all_chunks(document_id, tenant_id)
    return DeleteChunksResponse(document_id=document_id, deleted_count=deleted)


@router.get("/chunks/stats", response_model=ChunkStats, tags=["chunks"])
async def chunk_stats(
    document_id: uuid.UUID | None = None,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
) -> ChunkStats:
    return await knowledge.stats(tenant_id, document_id)


@router.post("/chunks/reembed", response_model=ReembedReport, tags=["chunks"])
async def reembed_chunks(
    body: ReembedRequest,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
    ingestion: IngestionOrchestrator = Depends(get_ingestion_orchestrator),
) -> ReembedReport:
    if body.document_id is not None:
        await knowledge.get_document(body.document_id, tenant_id)
    return await ingestion.reembed_chunks(tenant_id, body.document_id)


@router.patch("/chunks/{chunk_id}", response_model=ChunkMetadata, tags=["chunks"])
async def update_chunk_content(
    chunk_id: uuid.UUID,
    body: UpdateChunkContentRequest,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
) -> ChunkMetadata:
    chunk = await knowledge.update_chunk_content(chunk_id, tenant_id, body.content)
    return chunk.to_metadata()


@router.patch("/chunks/{chunk_id}/enabled", response_model=ChunkMetadata, tags=["chunks"])
async def set_chunk_enabled(
    chunk_id: uuid.UUID,
    body: SetChunkEnabledRequest,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
) -> ChunkMetadata:
    chunk = await knowledge.set_chunk_enabled(chunk_id, tenant_id, body.enabled)
    return chunk.to_metadata()


@router.delete("/chunks/{chunk_id}", status_code=204, tags=["chunks"])
async def delete_chunk(
    chunk_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    knowledge: KnowledgeBaseService = Depends(get_knowledge_service),
) -> Response:
    await knowledge.delete_chunk(chunk_id, tenant_id)
    return Response(status_code=204)


# --- retrieval -------------------------------------------------------------


@router.post("/search", response_model=SearchResponse, tags=["retrieval"])
async def search(
    body: SearchRequest,
    tenant_id: str = Depends(get_tenant_id),
    retrieval: RetrievalService = Depends(get_retrieval_service),
) -> SearchResponse:
    results = await retrieval.search(
        tenant_id,
        body.query_embedding,
        similarity_threshold=body.similarity_threshold,
        top_k=body.top_k,
        document_ids=body.document_ids,
        include_stale=body.include_stale,
    )
    return SearchResponse(results=results, has_context=bool(results))


@router.post("/query", response_model=SearchResponse, tags=["retrieval"])
async def query(
    body: QueryRequest,
    tenant_id: str = Depends(get_tenant_id),
    retrieval: RetrievalService = Depends(get_retrieval_service),
) -> SearchResponse:
    results = await retrieval.query(
        tenant_id,
        body.query,
        similarity_threshold=body.similarity_threshold,
        top_k=body.top_k,
        document_ids=body.document_ids,
    )
    return SearchResponse(results=results, has_context=bool(results))


@router.post("/chunking/preview", response_model=ChunkPreviewResponse, tags=["chunking"])
async def preview_chunks(
    body: ChunkPreviewRequest,
    chunking: ChunkingService = Depends(get_chunking_service),
) -> ChunkPreviewResponse:
    outcome = await chunking.chunk(body.content, body.chunking)
    return ChunkPreviewResponse(
        chunks=outcome.chunks,
        chunking_method=outcome.method,
        notices=outcome.notices,
    )
