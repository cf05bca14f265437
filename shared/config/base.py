from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseServiceSettings(BaseSettings):
    """Base configuration inherited by all services.

    Values are loaded from environment variables.
    An empty database_url or broker list switches the service to its
    in-process store and disables event publishing respectively.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    service_name: str = Field(..., description="Service identifier")
    service_port: int = Field(default=8000, ge=1024, le=65535)
    app_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = Field(default="INFO")
    debug: bool = Field(default=False, description="Render logs for a terminal instead of JSON")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    # PostgreSQL + pgvector
    database_url: SecretStr = Field(default=SecretStr(""), description="postgresql+asyncpg DSN")
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)

    # Redpanda
    redpanda_bootstrap_servers: str = Field(default="", description="Comma-separated broker list")
    redpanda_client_id: str = Field(default="knowledge-service")

    # OpenAI, or Azure OpenAI when an endpoint is set
    openai_api_key: SecretStr = Field(default=SecretStr(""))
    azure_openai_endpoint: str = Field(default="")
    azure_openai_api_key: SecretStr = Field(default=SecretStr(""))
    azure_openai_api_version: str = Field(default="2024-08-01-preview")
    azure_openai_chat_deployment: str = Field(default="gpt-4o-mini")
    azure_openai_embedding_deployment: str = Field(default="text-embedding-ada-002")
    azure_openai_embedding_dimensions: int = Field(default=1536, ge=1, le=16000)

    @field_validator("database_url")
    @classmethod
    def database_url_uses_asyncpg(cls, value: SecretStr) -> SecretStr:
        url = value.get_secret_value()
        if url and not url.startswith("postgresql+asyncpg://"):
            raise ValueError("database_url must use the postgresql+asyncpg:// scheme")
        return value

    @property
    def uses_database(self) -> bool:
        return bool(self.database_url.get_secret_value())

    @property
    def publishes_events(self) -> bool:
        return bool(self.redpanda_bootstrap_servers.strip())

    @property
    def uses_azure(self) -> bool:
        return bool(self.azure_openai_endpoint)
