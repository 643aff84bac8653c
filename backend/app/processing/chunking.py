"""
Heading Chunker  —  Markdown Section Segmentation
══════════════════════════════════════════════════

Splits a digest's content_md into retrieval chunks for the chunk index.

Approach
────────
  1. Cut the document into sections at `##` and `###` headings. Text before
     the first heading forms its own section with no heading.
  2. A section that fits under MAX_CHUNK_TOKENS becomes one chunk.
  3. A section under MIN_CHUNK_TOKENS is appended to the previous chunk when
     the merged text still fits under MAX_CHUNK_TOKENS.
  4. A section over MAX_CHUNK_TOKENS is split at blank-line paragraph
     boundaries, accumulating paragraphs up to the ceiling. A single
     paragraph larger than the ceiling is kept whole.

Token counts are estimated (ceil(chars / 4)); no tokenizer dependency.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

CHARS_PER_TOKEN  = 4
MIN_CHUNK_TOKENS = 200
MAX_CHUNK_TOKENS = 500

_H2_RE = re.compile(r"^##\s+(.+)")
_H3_RE = re.compile(r"^###\s+(.+)")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\n+")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ChunkResult:
    """A single chunk ready for embedding and persistence in context_chunks."""
    chunk_index: int              # 0-based ordering within the digest
    heading:     str | None       # nearest section heading, if any
    content:     str
    token_count: int
    metadata:    dict = field(default_factory=dict)


@dataclass
class _Section:
    heading: str | None
    lines:   list[str]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class HeadingChunker:
    """
    Stateless heading-based chunker.

    Usage:
        chunks = HeadingChunker().chunk(digest.content_md)
    """

    def __init__(
        self,
        min_tokens: int = MIN_CHUNK_TOKENS,
        max_tokens: int = MAX_CHUNK_TOKENS,
    ) -> None:
        self._min_tokens = min_tokens
        self._max_tokens = max_tokens

    def chunk(self, content_md: str | None) -> list[ChunkResult]:
        if not content_md or not content_md.strip():
            return []

        chunks: list[ChunkResult] = []
        for section in self._split_into_sections(content_md):
            content = "\n".join(section.lines).strip()
            if not content:
                continue

            tokens = estimate_tokens(content)
            if tokens <= self._max_tokens:
                if tokens < self._min_tokens and chunks and self._merge_into(chunks[-1], content):
                    continue
                chunks.append(self._make(len(chunks), section.heading, content))
            else:
                for part in self._split_paragraphs(content):
                    chunks.append(self._make(len(chunks), section.heading, part))

        logger.debug("HeadingChunker | chunks=%d chars=%d", len(chunks), len(content_md))
        return chunks

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _split_into_sections(content_md: str) -> list[_Section]:
        sections: list[_Section] = []
        current = _Section(heading=None, lines=[])

        for line in content_md.split("\n"):
            match = _H2_RE.match(line) or _H3_RE.match(line)
            if match:
                if current.lines:
                    sections.append(current)
                current = _Section(heading=match.group(1).strip(), lines=[line])
            else:
                current.lines.append(line)

        if current.lines:
            sections.append(current)
        return sections

    def _merge_into(self, previous: ChunkResult, content: str) -> bool:
        merged = f"{previous.content}\n\n{content}"
        merged_tokens = estimate_tokens(merged)
        if merged_tokens > self._max_tokens:
            return False
        previous.content = merged
        previous.token_count = merged_tokens
        return True

    def _split_paragraphs(self, content: str) -> list[str]:
        parts: list[str] = []
        accumulator: list[str] = []
        acc_tokens = 0

        for paragraph in _PARAGRAPH_SPLIT_RE.split(content):
            para_tokens = estimate_tokens(paragraph)
            if accumulator and acc_tokens + para_tokens > self._max_tokens:
                parts.append("\n\n".join(accumulator))
                accumulator = [paragraph]
                acc_tokens = para_tokens
            else:
                accumulator.append(paragraph)
                acc_tokens += para_tokens

        if accumulator:
            parts.append("\n\n".join(accumulator))
        return parts

    @staticmethod
    def _make(index: int, heading: str | None, content: str) -> ChunkResult:
        return ChunkResult(
            chunk_index=index,
            heading=heading,
            content=content,
            token_count=estimate_tokens(content),
        )
