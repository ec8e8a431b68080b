import pytest

from agent_engine.config import EmbeddingConfig
from agent_engine.errors import EmbeddingError, InputError
from agent_engine.ingest.embedder import (
    Embedder,
    HashingEmbedder,
    clean_text,
    cosine_similarity,
)


class RecordingEmbedder(Embedder):
    def __init__(self, config: EmbeddingConfig) -> None:
        super().__init__(config)
        self.batches: list[list[str]] = []

    async def _embed_many(self, texts: list[str]) -> list[list[float]]:
        self.batches.append(list(texts))
        return [[float(len(text)), 1.0] for text in texts]


class BrokenEmbedder(Embedder):
    async def _embed_many(self, texts: list[str]) -> list[list[float]]:
        raise ConnectionError("provider unreachable")


def test_clean_text_collapses_whitespace_and_control_chars() -> None:
    assert clean_text("  access\n\n control\x00 policy\t ") == "access control policy"


def test_cosine_similarity() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_cosine_similarity_rejects_dimension_mismatch() -> None:
    with pytest.raises(InputError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


async def test_hashing_embedder_is_deterministic_and_normalised() -> None:
    embedder = HashingEmbedder()

    first = await embedder.embed("Customer data must be encrypted")
    second = await embedder.embed("customer   data must be ENCRYPTED")

    assert len(first) == 256
    assert first == second
    assert cosine_similarity(first, first) == pytest.approx(1.0)


async def test_embed_batch_splits_by_max_batch_size() -> None:
    embedder = RecordingEmbedder(EmbeddingConfig(dimensions=2, max_batch_size=2))

    vectors = await embedder.embed_batch(["a", "bb", "ccc", "dddd", "eeeee"])

    assert [len(batch) for batch in embedder.batches] == [2, 2, 1]
    assert [vector[0] for vector in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]


async def test_empty_batch_returns_nothing() -> None:
    embedder = RecordingEmbedder(EmbeddingConfig(dimensions=2))

    assert await embedder.embed_batch([]) == []
    assert embedder.batches == []


async def test_empty_text_rejected() -> None:
    embedder = RecordingEmbedder(EmbeddingConfig(dimensions=2))

    with pytest.raises(InputError):
        await embedder.embed("  \n ")
    with pytest.raises(InputError):
        await embedder.embed_batch(["fine", "   "])
    assert embedder.batches == []


async def test_provider_failure_is_wrapped() -> None:
    with pytest.raises(EmbeddingError, match="provider unreachable"):
        await BrokenEmbedder().embed("hello")
