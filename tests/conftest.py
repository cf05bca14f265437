"""Shared pytest fixtures for the knowledge service test suite."""

from __future__ import annotations

import hashlib
from collections.abc import Callable

import pytest
import pytest_asyncio

from knowledge_service.domain.exceptions import EmbeddingError, EmptyEmbeddingInputError
from knowledge_service.domain.interfaces import EmbeddingPort, EventPublisherPort
from knowledge_service.domain.models import KnowledgeDocument
from knowledge_service.domain.services import (
    ChunkingService,
    IngestionOrchestrator,
    KnowledgeBaseService,
    RetrievalService,
)
from knowledge_service.infrastructure.memory_repository import (
    InMemoryChunkRepository,
    InMemoryDocumentRepository,
)
from shared.events.base import BaseEvent

TENANT = "tenant_acme"
DIMENSIONS = 8


class FakeEmbedder(EmbeddingPort):
    """Deterministic embedder: the same text always maps to the same unit-ish vector.

    ``vectors`` pins exact vectors for chosen texts; ``failures`` maps a text to
    a factory for the error its embedding call should raise.
    """

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.vectors: dict[str, list[float]] = {}
        self.failures: dict[str, Callable[[], EmbeddingError]] = {}
        self.calls: list[str] = []

    @property
    def model_name(self) -> str:
        return "fake-embedding"

    async def embed(self, text: str) -> list[float]:
        if not text.strip():
            raise EmptyEmbeddingInputError()
        self.calls.append(text)
        if text in self.failures:
            raise self.failures[text]()
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(byte - 128) / 128 for byte in digest[: self.dimensions]]


class RecordingPublisher(EventPublisherPort):
    def __init__(self) -> None:
        self.events: list[BaseEvent] = []

    async def publish(self, event: BaseEvent) -> None:
        self.events.append(event)


@pytest.fixture
def tenant_id() -> str:
    return TENANT


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def document_repo() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository()


@pytest.fixture
def chunk_repo() -> InMemoryChunkRepository:
    return InMemoryChunkRepository()


@pytest.fixture
def chunking_service() -> ChunkingService:
    return ChunkingService()


@pytest.fixture
def knowledge_service(
    document_repo: InMemoryDocumentRepository,
    chunk_repo: InMemoryChunkRepository,
) -> KnowledgeBaseService:
    return KnowledgeBaseService(document_repo, chunk_repo)


@pytest.fixture
def orchestrator(
    chunking_service: ChunkingService,
    embedder: FakeEmbedder,
    document_repo: InMemoryDocumentRepository,
    chunk_repo: InMemoryChunkRepository,
    publisher: RecordingPublisher,
) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        chunking=chunking_service,
        embedder=embedder,
        documents=document_repo,
        chunks=chunk_repo,
        publisher=publisher,
        concurrency=2,
    )


@pytest.fixture
def retrieval_service(chunk_repo: InMemoryChunkRepository, embedder: FakeEmbedder) -> RetrievalService:
    return RetrievalService(chunk_repo, embedder, similarity_threshold=0.7, top_k=5)


@pytest.fixture
def make_document(document_repo: InMemoryDocumentRepository, tenant_id: str):
    """Factory that saves a document with the given content and returns it."""

    async def _make(content: str, title: str = "Pricing handbook") -> KnowledgeDocument:
        document = KnowledgeDocument(tenant_id=tenant_id, title=title, content=content)
        await document_repo.save(document)
        return document

    return _make


@pytest_asyncio.fixture
async def seeded_document(make_document) -> KnowledgeDocument:
    return await make_document(
        "Discounts above 20% need approval.\n\n"
        "Annual contracts renew automatically.\n\n"
        "Support is included in the enterprise tier."
    )
