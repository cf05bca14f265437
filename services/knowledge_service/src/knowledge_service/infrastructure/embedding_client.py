from __future__ import annotations

import math

import openai
import structlog
from openai import AsyncAzureOpenAI, AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from knowledge_service.domain.exceptions import (
    EmbeddingAuthError,
    EmbeddingError,
    EmbeddingProviderUnavailableError,
    EmbeddingRateLimitError,
    EmbeddingRequestError,
    EmbeddingTimeoutError,
    EmptyEmbeddingInputError,
    MalformedEmbeddingResponseError,
)
from knowledge_service.domain.interfaces import EmbeddingPort
from shared.config.base import BaseServiceSettings

logger = structlog.get_logger(__name__)


def build_openai_client(settings: BaseServiceSettings) -> AsyncOpenAI:
    """Azure when an endpoint is configured, api.openai.com otherwise.

    SDK-level retries are disabled; callers own the retry policy.
    """
    if settings.uses_azure:
        return AsyncAzureOpenAI(
            azure_endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key.get_secret_value(),
            api_version=settings.azure_openai_api_version,
            max_retries=0,
        )
    return AsyncOpenAI(api_key=settings.openai_api_key.get_secret_value(), max_retries=0)


def classify_openai_error(exc: openai.OpenAIError) -> EmbeddingError:
    # APITimeoutError subclasses APIConnectionError, so order matters here.
    if isinstance(exc, openai.APITimeoutError):
        return EmbeddingTimeoutError(str(exc))
    if isinstance(exc, openai.APIConnectionError):
        return EmbeddingProviderUnavailableError(str(exc))
    if isinstance(exc, openai.RateLimitError):
        return EmbeddingRateLimitError(str(exc))
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return EmbeddingAuthError(str(exc))
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return EmbeddingProviderUnavailableError(f"HTTP {exc.status_code}: {exc.message}")
        return EmbeddingRequestError(f"HTTP {exc.status_code}: {exc.message}")
    return EmbeddingError(str(exc))


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, EmbeddingError) and exc.retryable


class EmbeddingClient(EmbeddingPort):
    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        dimensions: int,
        timeout_seconds: float = 20.0,
        max_attempts: int = 3,
        wait_initial: float = 1.0,
        wait_max: float = 10.0,
    ) -> None:
        self._client = client
        self._model = model
        self._dimensions = dimensions
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max_attempts
        self._wait_initial = wait_initial
        self._wait_max = wait_max

    @property
    def model_name(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmptyEmbeddingInputError()

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential_jitter(
                initial=self._wait_initial,
                max=self._wait_max,
                jitter=self._wait_initial,
            ),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return await retrying(self._embed_once, text)

    async def _embed_once(self, text: str) -> list[float]:
        try:
            response = await self._client.embeddings.create(
                input=text,
                model=self._model,
                timeout=self._timeout_seconds,
            )
        except openai.OpenAIError as exc:
            raise classify_openai_error(exc) from exc

        if not response.data:
            raise MalformedEmbeddingResponseError("response contained no embeddings")

        embedding = [float(value) for value in response.data[0].embedding]
        if len(embedding) != self._dimensions:
            raise MalformedEmbeddingResponseError(
                f"expected {self._dimensions} dimensions, got {len(embedding)}"
            )
        if not all(math.isfinite(value) for value in embedding):
            raise MalformedEmbeddingResponseError("embedding contains non-finite values")

        logger.debug(
            "embedding.call.completed",
            model=self._model,
            chars=len(text),
            total_tokens=response.usage.total_tokens if response.usage else None,
        )
        return embedding

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "embedding.call.retrying",
            model=self._model,
            attempt=retry_state.attempt_number,
            max_attempts=self._max_attempts,
            error_code=getattr(exc, "error_code", None),
            sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        )
