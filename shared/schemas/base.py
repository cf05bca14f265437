from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    service: str
    version: str
    chunk_store: str
    embedding_model: str


class ErrorResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    error_code: str
    message: str
    correlation_id: str | None = None
    document_id: str | None = None
    chunk_index: int | None = None
    details: dict[str, Any] | None = None
