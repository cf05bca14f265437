from __future__ import annotations

import json
import re
from typing import Any

import openai
import structlog
from openai import AsyncOpenAI

from knowledge_service.domain.chunking import AIAssistedOptions, ChunkingOptions
from knowledge_service.domain.exceptions import ChunkingError
from knowledge_service.domain.interfaces import ChunkerPort
from knowledge_service.domain.models import ChunkingOutcome
from shared.schemas.documents import ChunkingMethod

logger = structlog.get_logger(__name__)

TRUNCATION_MARKER = "\n...[content truncated]...\n"

_JSON_ARRAY = re.compile(r"(\[[\s\S]*\])")

_SYSTEM_PROMPT = (
    "You split documents into chunks for semantic search. "
    "Each chunk should hold one complete thought, topic or section. "
    "Aim for at most {max_chunks} chunks; use fewer when the text calls for it. "
    "Cover the entire text without omitting content. "
    'Respond with a JSON object of the form {{"chunks": ["...", "..."]}} and nothing else.'
)


def truncate_for_prompt(content: str, context_limit: int) -> str:
    """Keep the head and tail of oversized content around a truncation marker."""
    if len(content) <= context_limit:
        return content
    sample = context_limit // 2 - 100
    return content[:sample] + TRUNCATION_MARKER + content[-sample:]


def parse_chunk_response(message: str) -> list[str]:
    """Extract a list of chunk strings from a model reply.

    Accepts a bare JSON array, an array embedded in surrounding text, or an
    object whose first list-valued key holds the chunks.
    """
    match = _JSON_ARRAY.search(message)
    try:
        parsed: Any = json.loads(match.group(1) if match else message)
    except json.JSONDecodeError as exc:
        raise ChunkingError(f"response is not valid JSON ({exc.msg})") from exc

    if isinstance(parsed, dict):
        parsed = next((value for value in parsed.values() if isinstance(value, list)), None)

    if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
        raise ChunkingError("response is not an array of strings")

    chunks = [item.strip() for item in parsed if item.strip()]
    if not chunks:
        raise ChunkingError("response contained no chunks")
    return chunks


class OpenAIChunker(ChunkerPort):
    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        context_limit: int = 10000,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._client = client
        self._model = model
        self._context_limit = context_limit
        self._timeout_seconds = timeout_seconds

    async def chunk(self, content: str, options: ChunkingOptions) -> ChunkingOutcome:
        max_chunks = options.max_chunks if isinstance(options, AIAssistedOptions) else 10
        prompt_text = truncate_for_prompt(content, self._context_limit)
        notices = []
        if len(content) > self._context_limit:
            logger.warning(
                "chunking.ai.content_truncated",
                content_length=len(content),
                context_limit=self._context_limit,
            )
            notices.append(
                f"Content longer than {self._context_limit} characters was truncated before AI chunking."
            )

        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT.format(max_chunks=max_chunks)},
                    {"role": "user", "content": f"TEXT TO CHUNK:\n{prompt_text}"},
                ],
                temperature=0.2,
                response_format={"type": "json_object"},
                timeout=self._timeout_seconds,
            )
        except openai.OpenAIError as exc:
            raise ChunkingError(f"{type(exc).__name__}: {exc}") from exc

        message = completion.choices[0].message.content if completion.choices else None
        if not message:
            raise ChunkingError("response content is empty")

        chunks = parse_chunk_response(message)
        logger.info("chunking.ai.completed", chunk_count=len(chunks), max_chunks=max_chunks)
        return ChunkingOutcome(
            chunks=chunks,
            requested_method=ChunkingMethod.AI_ASSISTED,
            method=ChunkingMethod.AI_ASSISTED,
            notices=notices,
        )
