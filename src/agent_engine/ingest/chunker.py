"""Sentence-packed chunking with tail-sentence overlap."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from pydantic import ValidationError

from agent_engine.config import ChunkingConfig
from agent_engine.errors import InputError
from agent_engine.obs.logging import get_logger
from agent_engine.obs.tracing import estimate_token_count
from agent_engine.types import DocumentChunk

logger = get_logger(__name__)

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


@dataclass(slots=True)
class _Sentence:
    text: str
    start: int
    end: int


def validate_chunking_config(
    *,
    max_tokens: int | None = None,
    overlap_tokens: int | None = None,
    min_chunk_length: int | None = None,
) -> None:
    """Reject partial chunking options before they are merged with defaults."""
    if max_tokens is not None and max_tokens <= 0:
        raise InputError("max_tokens must be greater than 0")
    if overlap_tokens is not None and overlap_tokens < 0:
        raise InputError("overlap_tokens must be non-negative")
    if min_chunk_length is not None and min_chunk_length < 0:
        raise InputError("min_chunk_length must be non-negative")
    if max_tokens is not None and overlap_tokens is not None and overlap_tokens >= max_tokens:
        raise InputError("overlap_tokens must be less than max_tokens")


class SentenceChunker:
    """Splits documents into token-bounded chunks on sentence boundaries.

    Token counts use the four-characters-per-token estimate. Text that fits
    in `max_tokens` is returned as a single chunk. Longer text is split after
    `.`, `!` or `?` followed by whitespace and packed greedily; when the next
    sentence would overflow, the current chunk is emitted (if at least
    `min_chunk_length` characters) and the next one is seeded with the
    trailing `floor(n * overlap_tokens / max_tokens)` sentences of the
    emitted chunk, at least one when overlap is enabled.

    The seed is kept even when it plus the next sentence overflows, so a
    seeded chunk can exceed `max_tokens`. A single sentence longer than
    `max_tokens` likewise becomes its own oversized chunk rather than being
    cut mid-sentence.

    Positions are character offsets into the stripped input. Chunk content
    joins sentences with single spaces, so it can differ from the source
    slice where sentences were separated by newlines.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    @classmethod
    def from_options(cls, **options: int) -> "SentenceChunker":
        validate_chunking_config(**options)
        try:
            return cls(ChunkingConfig(**options))
        except ValidationError as exc:
            raise InputError(str(exc)) from exc

    def chunk(self, text: str) -> list[DocumentChunk]:
        cleaned = text.strip()
        if not cleaned:
            raise InputError("Cannot chunk empty content")

        total_tokens = estimate_token_count(cleaned)
        if total_tokens <= self.config.max_tokens:
            return [
                DocumentChunk(
                    content=cleaned,
                    chunk_index=0,
                    start_position=0,
                    end_position=len(cleaned),
                    token_count=total_tokens,
                    has_overlap=False,
                )
            ]

        max_tokens = self.config.max_tokens
        chunks: list[DocumentChunk] = []
        current: list[_Sentence] = []
        seeded = False

        for sentence in self._split_sentences(cleaned):
            if current and _tokens(current + [sentence]) > max_tokens:
                self._emit(chunks, current, seeded)
                current = self._overlap_seed(current)
                seeded = bool(current)
            current.append(sentence)

        if current:
            self._emit(chunks, current, seeded)
        return chunks

    def _emit(self, chunks: list[DocumentChunk], sentences: list[_Sentence], seeded: bool) -> None:
        content = " ".join(sentence.text for sentence in sentences)
        if len(content) < self.config.min_chunk_length:
            logger.debug("chunk_skipped_short", length=len(content))
            return
        chunks.append(
            DocumentChunk(
                content=content,
                chunk_index=len(chunks),
                start_position=sentences[0].start,
                end_position=sentences[-1].end,
                token_count=estimate_token_count(content),
                has_overlap=seeded,
            )
        )

    def _overlap_seed(self, previous: list[_Sentence]) -> list[_Sentence]:
        if self.config.overlap_tokens == 0:
            return []
        count = math.floor(len(previous) * self.config.overlap_tokens / self.config.max_tokens)
        return previous[-min(max(1, count), len(previous)) :]

    @staticmethod
    def _split_sentences(text: str) -> list[_Sentence]:
        sentences: list[_Sentence] = []
        cursor = 0
        for boundary in _SENTENCE_BOUNDARY.finditer(text):
            sentences.append(_Sentence(text[cursor : boundary.start()], cursor, boundary.start()))
            cursor = boundary.end()
        sentences.append(_Sentence(text[cursor:], cursor, len(text)))
        return [sentence for sentence in sentences if sentence.text]


def _tokens(sentences: list[_Sentence]) -> int:
    length = sum(len(sentence.text) for sentence in sentences) + len(sentences) - 1
    return math.ceil(length / 4)


def chunk_documents(
    documents: dict[str, str], chunker: SentenceChunker | None = None
) -> dict[str, list[DocumentChunk]]:
    """Chunk many documents by id, skipping documents that fail to chunk."""
    chunker = chunker or SentenceChunker()
    chunked: dict[str, list[DocumentChunk]] = {}
    for document_id, text in documents.items():
        try:
            chunked[document_id] = chunker.chunk(text)
        except InputError as exc:
            logger.warning("document_chunking_failed", document_id=document_id, error=str(exc))
    return chunked
