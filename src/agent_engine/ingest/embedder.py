"""Embedding abstractions, a deterministic baseline and a LangChain adapter."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt

from langchain_core.embeddings import Embeddings

from agent_engine.config import EmbeddingConfig, Settings
from agent_engine.errors import EmbeddingError, InputError
from agent_engine.obs.logging import get_logger

logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def clean_text(text: str) -> str:
    """Collapse whitespace runs and drop control characters."""
    return _CONTROL_CHARS.sub("", _WHITESPACE.sub(" ", text)).strip()


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        raise InputError(f"Embedding dimensions do not match: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class Embedder(ABC):
    """Embeds text into fixed-length vectors.

    Subclasses implement `_embed_many` for one provider batch; cleaning,
    empty-input checks and batching by `max_batch_size` live here.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()

    @property
    def dimensions(self) -> int:
        return self.config.dimensions

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        cleaned = [clean_text(text) for text in texts]
        for index, text in enumerate(cleaned):
            if not text:
                raise InputError(f"Cannot generate embedding for empty text (index {index})")

        vectors: list[list[float]] = []
        size = self.config.max_batch_size
        for offset in range(0, len(cleaned), size):
            batch = cleaned[offset : offset + size]
            try:
                vectors.extend(await self._embed_many(batch))
            except InputError:
                raise
            except Exception as exc:
                logger.error("embedding_failed", batch_size=len(batch), error=str(exc))
                raise EmbeddingError(f"Failed to generate embeddings: {exc}") from exc
        return vectors

    @abstractmethod
    async def _embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed one provider-sized batch of cleaned, non-empty texts."""


class HashingEmbedder(Embedder):
    """Deterministic signed feature-hashing embedding.

    Used for local runs and tests; vectors are L2-normalised so cosine
    similarity of a text with itself is 1.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        super().__init__(config or EmbeddingConfig(dimensions=256))

    async def _embed_many(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in text.lower().split():
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimensions
            vector[idx] += -1.0 if digest[4] % 2 else 1.0

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class LangChainEmbedder(Embedder):
    """Adapts any LangChain `Embeddings` implementation."""

    def __init__(self, embeddings: Embeddings, config: EmbeddingConfig | None = None) -> None:
        super().__init__(config)
        self._embeddings = embeddings

    async def _embed_many(self, texts: list[str]) -> list[list[float]]:
        return await self._embeddings.aembed_documents(texts)


def create_embedder(settings: Settings, config: EmbeddingConfig | None = None) -> Embedder:
    """OpenAI embeddings when an API key is configured, hashing otherwise."""
    if not settings.openai_api_key:
        logger.info("embedder_selected", kind="hashing")
        return HashingEmbedder()

    from langchain_openai import OpenAIEmbeddings

    config = config or EmbeddingConfig()
    embeddings = OpenAIEmbeddings(
        model="text-embedding-3-small",
        dimensions=config.dimensions,
        api_key=settings.openai_api_key,
    )
    logger.info("embedder_selected", kind="openai", dimensions=config.dimensions)
    return LangChainEmbedder(embeddings, config)
