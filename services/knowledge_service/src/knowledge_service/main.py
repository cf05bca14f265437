from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from knowledge_service.api.dependencies import ServiceContainer
from knowledge_service.api.routes import router
from knowledge_service.domain.exceptions import (
    ChunkNotFoundError,
    DocumentNotFoundError,
    EmbeddingError,
    EmptyEmbeddingInputError,
    IngestionTimeoutError,
    InvalidChunkContentError,
    KnowledgeBaseError,
    RetrievalError,
    SplitError,
)
from knowledge_service.domain.interfaces import (
    ChunkRepositoryPort,
    DocumentRepositoryPort,
    EventPublisherPort,
)
from knowledge_service.domain.services import (
    ChunkingService,
    IngestionOrchestrator,
    KnowledgeBaseService,
    RetrievalService,
)
from knowledge_service.infrastructure.ai_chunker import OpenAIChunker
from knowledge_service.infrastructure.embedding_client import EmbeddingClient, build_openai_client
from knowledge_service.infrastructure.memory_repository import (
    InMemoryChunkRepository,
    InMemoryDocumentRepository,
)
from knowledge_service.infrastructure.producer import RedpandaEventPublisher
from knowledge_service.infrastructure.repository import (
    PostgresChunkRepository,
    PostgresDocumentRepository,
    build_engine,
)
from knowledge_service.settings import Settings
from shared.logging.config import clear_request_context, configure_logging
from shared.schemas.base import ErrorResponse

settings = Settings()
configure_logging(settings.service_name, settings.log_level, json_output=not settings.debug)
logger = structlog.get_logger(__name__)


def build_container(
    settings: Settings,
    documents: DocumentRepositoryPort,
    chunks: ChunkRepositoryPort,
    publisher: EventPublisherPort | None,
    chunk_store: str,
) -> ServiceContainer:
    client = build_openai_client(settings)
    embedder = EmbeddingClient(
        client=client,
        model=settings.azure_openai_embedding_deployment,
        dimensions=settings.azure_openai_embedding_dimensions,
        timeout_seconds=settings.embedding_timeout_seconds,
        max_attempts=settings.embedding_max_attempts,
        wait_initial=settings.embedding_retry_wait_initial,
        wait_max=settings.embedding_retry_wait_max,
    )
    chunking = ChunkingService(
        ai_chunker=OpenAIChunker(
            client=client,
            model=settings.azure_openai_chat_deployment,
            context_limit=settings.ai_chunking_context_limit,
            timeout_seconds=settings.ai_chunking_timeout_seconds,
        )
    )
    return ServiceContainer(
        knowledge=KnowledgeBaseService(documents, chunks),
        ingestion=IngestionOrchestrator(
            chunking=chunking,
            embedder=embedder,
            documents=documents,
            chunks=chunks,
            publisher=publisher,
            concurrency=settings.embedding_concurrency,
            failure_policy=settings.embedding_failure_policy,
            timeout_seconds=settings.ingestion_timeout_seconds,
        ),
        retrieval=RetrievalService(
            chunks,
            embedder,
            similarity_threshold=settings.retrieval_similarity_threshold,
            top_k=settings.retrieval_top_k,
            include_stale=settings.retrieval_include_stale,
        ),
        chunking=chunking,
        chunk_store=chunk_store,
        embedding_model=embedder.model_name,
    )


def error_status(exc: KnowledgeBaseError) -> int:
    if isinstance(exc, (DocumentNotFoundError, ChunkNotFoundError)):
        return 404
    if isinstance(exc, (SplitError, EmptyEmbeddingInputError, InvalidChunkContentError)):
        return 422
    if isinstance(exc, RetrievalError) and exc.invalid_input:
        return 422
    if isinstance(exc, EmbeddingError):
        return 503 if exc.retryable else 502
    if isinstance(exc, IngestionTimeoutError):
        return 504
    return 500


async def handle_knowledge_base_error(request: Request, exc: KnowledgeBaseError) -> JSONResponse:
    status_code = error_status(exc)
    log = logger.bind(
        path=request.url.path,
        error_code=exc.error_code,
        document_id=str(exc.document_id) if exc.document_id else None,
        chunk_index=exc.chunk_index,
    )
    if status_code >= 500:
        log.error("request.failed", status_code=status_code, error=str(exc))
    else:
        log.info("request.rejected", status_code=status_code, error=str(exc))

    body = ErrorResponse(
        error_code=exc.error_code,
        message=str(exc),
        correlation_id=request.headers.get("X-Correlation-ID"),
        document_id=str(exc.document_id) if exc.document_id else None,
        chunk_index=exc.chunk_index,
        details=exc.details,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if getattr(app.state, "container", None) is not None:
        yield
        return

    logger.info(
        "service.starting",
        version=settings.app_version,
        environment=settings.environment,
        bootstrap_servers=settings.redpanda_bootstrap_servers or None,
    )

    engine: AsyncEngine | None = None

    if settings.uses_database:
        engine = build_engine(
            settings.database_url.get_secret_value(), settings.db_pool_size, settings.db_max_overflow
        )
        documents: DocumentRepositoryPort = PostgresDocumentRepository(engine)
        chunks: ChunkRepositoryPort = PostgresChunkRepository(engine)
        chunk_store = "postgres"
    else:
        logger.warning("service.store.in_memory", reason="DATABASE_URL is not set")
        documents = InMemoryDocumentRepository()
        chunks = InMemoryChunkRepository()
        chunk_store = "memory"

    publisher: RedpandaEventPublisher | None = None
    if settings.publishes_events:
        publisher = RedpandaEventPublisher(
            bootstrap_servers=settings.redpanda_bootstrap_servers,
            client_id=settings.redpanda_client_id,
        )
        try:
            await publisher.start()
        except Exception as exc:
            logger.critical("service.startup.failed", component="kafka_producer", error=str(exc))
            if engine is not None:
                await engine.dispose()
            raise

    app.state.container = build_container(settings, documents, chunks, publisher, chunk_store)

    logger.info("service.ready", port=settings.service_port, chunk_store=chunk_store)
    yield

    if publisher is not None:
        await publisher.stop()
    if engine is not None:
        await engine.dispose()
    app.state.container = None
    logger.info("service.stopped")


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Build the FastAPI app. A prebuilt container skips infrastructure setup."""
    app = FastAPI(
        title="Knowledge Service",
        description="Chunks documents, embeds chunks and serves similarity retrieval.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def reset_request_context(request: Request, call_next):  # type: ignore[no-untyped-def]
        try:
            return await call_next(request)
        finally:
            clear_request_context()

    app.add_exception_handler(KnowledgeBaseError, handle_knowledge_base_error)  # type: ignore[arg-type]
    app.include_router(router)
    return app


app = create_app()
