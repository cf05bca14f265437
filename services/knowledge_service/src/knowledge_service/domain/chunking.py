"""Rule-based chunking strategies.

Every strategy is a pure function from text to an ordered list of trimmed,
non-empty chunks. Strategy selection is modelled as a tagged union of option
types, each of which knows how to split text with its own parameters.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from shared.schemas.documents import ChunkingMethod

_PARAGRAPH_BOUNDARY = re.compile(r"\n\s*\n")
_PAGE_BOUNDARY = re.compile(r"\n\s*\n\s*\n\s*\n")

# Escape sequences users type into a separator field, decoded before regex-escaping.
_TYPED_ESCAPES = (("\\n", "\n"), ("\\r", "\r"), ("\\t", "\t"))


def _clean(pieces: list[str]) -> list[str]:
    return [piece.strip() for piece in pieces if piece.strip()]


def decode_separator(separator: str) -> str:
    for typed, actual in _TYPED_ESCAPES:
        separator = separator.replace(typed, actual)
    return separator


def split_by_separator(content: str, separator: str = "\n") -> list[str]:
    pattern = re.escape(decode_separator(separator))
    return _clean(re.split(pattern, content))


def split_by_paragraph(content: str) -> list[str]:
    return _clean(_PARAGRAPH_BOUNDARY.split(content))


def split_by_page(content: str) -> list[str]:
    return _clean(_PAGE_BOUNDARY.split(content))


def split_by_header(content: str, max_depth: int = 3) -> list[str]:
    """Split at markdown headings of level 1..max_depth.

    Each section keeps its heading line. Text before the first heading is a
    section of its own; content without headings comes back as one chunk.
    """
    heading = re.compile(rf"^#{{1,{max_depth}}}[ \t]+\S.*$", re.MULTILINE)
    starts = [match.start() for match in heading.finditer(content)]
    if not starts:
        return _clean([content])

    if starts[0] > 0:
        starts.insert(0, 0)
    ends = starts[1:] + [len(content)]
    return _clean([content[start:end] for start, end in zip(starts, ends)])


def split_by_fixed_size(content: str, size: int = 500) -> list[str]:
    """Greedy windows of at most `size` characters.

    A window ends, in order of preference, exactly on whitespace, on the last
    paragraph break in its second half, on the last whitespace in its second
    half, or mid-word at `size` when nothing else is available.
    """
    text = content.strip()
    floor = size // 2
    chunks: list[str] = []
    start = 0

    while start < len(text):
        while start < len(text) and text[start].isspace():
            start += 1
        if start >= len(text):
            break

        end = start + size
        if end >= len(text):
            chunks.append(text[start:])
            break

        window = text[start:end]
        if text[end].isspace():
            cut = size
        else:
            cut = window.rfind("\n\n", floor)
            if cut == -1:
                cut = next(
                    (i for i in range(len(window) - 1, floor - 1, -1) if window[i].isspace()),
                    size,
                )

        chunks.append(text[start : start + cut])
        start += cut

    return _clean(chunks)


class _ChunkingOptionsBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def split(self, content: str) -> list[str]:
        raise NotImplementedError

    def parameters(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"method"})


class LineBreakOptions(_ChunkingOptionsBase):
    method: Literal["line_break"] = "line_break"
    separator: str = Field(default="\n", min_length=1, max_length=64)

    def split(self, content: str) -> list[str]:
        return split_by_separator(content, self.separator)


class ParagraphOptions(_ChunkingOptionsBase):
    method: Literal["paragraph"] = "paragraph"

    def split(self, content: str) -> list[str]:
        return split_by_paragraph(content)


class PageOptions(_ChunkingOptionsBase):
    method: Literal["page"] = "page"

    def split(self, content: str) -> list[str]:
        return split_by_page(content)


class HeaderOptions(_ChunkingOptionsBase):
    method: Literal["header"] = "header"
    max_depth: int = Field(default=3, ge=1, le=6)

    def split(self, content: str) -> list[str]:
        return split_by_header(content, self.max_depth)


class FixedSizeOptions(_ChunkingOptionsBase):
    method: Literal["fixed_size"] = "fixed_size"
    chunk_size: int = Field(default=500, ge=20, le=20000)

    def split(self, content: str) -> list[str]:
        return split_by_fixed_size(content, self.chunk_size)


class AIAssistedOptions(_ChunkingOptionsBase):
    method: Literal["ai_assisted"] = "ai_assisted"
    max_chunks: int = Field(default=10, ge=1, le=200)

    def split(self, content: str) -> list[str]:
        # The remote chunker is only reachable asynchronously; synchronous
        # splitting yields its deterministic fallback.
        return split_by_paragraph(content)


ChunkingOptions = Annotated[
    Union[
        LineBreakOptions,
        ParagraphOptions,
        PageOptions,
        HeaderOptions,
        FixedSizeOptions,
        AIAssistedOptions,
    ],
    Field(discriminator="method"),
]

_options_adapter: TypeAdapter[ChunkingOptions] = TypeAdapter(ChunkingOptions)


def parse_chunking_options(data: dict[str, Any]) -> ChunkingOptions:
    return _options_adapter.validate_python(data)


def generate_chunks(content: str, options: ChunkingOptions) -> list[str]:
    if not content or not content.strip():
        return []
    return options.split(content)


def build_chunk_metadata(
    method: ChunkingMethod,
    options: ChunkingOptions,
    index: int,
    total: int,
) -> dict[str, Any]:
    return {
        "chunking_method": str(method),
        "index": index,
        "total_chunks": total,
        **options.parameters(),
    }
