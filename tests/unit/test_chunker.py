import pytest

from agent_engine.config import ChunkingConfig
from agent_engine.errors import InputError
from agent_engine.ingest.chunker import SentenceChunker, chunk_documents, validate_chunking_config


def _sentences(count: int) -> str:
    return " ".join(
        f"Sentence number {i} explains how data governance requires strict access control."
        for i in range(count)
    )


def test_short_text_is_single_chunk() -> None:
    chunker = SentenceChunker()
    text = "  Encryption at rest is mandatory for customer data.  "

    chunks = chunker.chunk(text)

    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.content == text.strip()
    assert chunk.chunk_index == 0
    assert chunk.start_position == 0
    assert chunk.end_position == len(text.strip())
    assert chunk.token_count == 13
    assert chunk.has_overlap is False


def test_empty_text_rejected() -> None:
    with pytest.raises(InputError):
        SentenceChunker().chunk("   \n\t ")


def test_long_text_chunks_are_bounded_contiguous_and_overlapping() -> None:
    config = ChunkingConfig(max_tokens=100, overlap_tokens=30, min_chunk_length=10)
    chunker = SentenceChunker(config)

    chunks = chunker.chunk(_sentences(40))

    assert len(chunks) >= 3
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    assert all(chunk.token_count <= 100 for chunk in chunks)
    assert chunks[0].has_overlap is False
    assert all(chunk.has_overlap for chunk in chunks[1:])
    for previous, current in zip(chunks, chunks[1:]):
        last_sentence = previous.content.split(". ")[-1]
        assert current.content.startswith(last_sentence.rstrip("."))
        assert current.start_position < previous.end_position


def test_overlap_kept_when_sentences_fill_the_budget() -> None:
    config = ChunkingConfig(max_tokens=10, overlap_tokens=2)
    text = " ".join(
        f"Sentence {i} says access control reviews happen every single quarter." for i in range(6)
    )

    chunks = SentenceChunker(config).chunk(text)

    assert len(chunks) >= 2
    assert chunks[0].has_overlap is False
    assert all(chunk.has_overlap for chunk in chunks[1:])
    for previous, current in zip(chunks, chunks[1:]):
        last_sentence = previous.content.split(". ")[-1]
        assert current.content.startswith(last_sentence.rstrip("."))
        assert current.start_position < previous.end_position


def test_no_overlap_when_disabled() -> None:
    config = ChunkingConfig(max_tokens=100, overlap_tokens=0, min_chunk_length=10)

    chunks = SentenceChunker(config).chunk(_sentences(30))

    assert len(chunks) >= 2
    assert not any(chunk.has_overlap for chunk in chunks)
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_position > previous.end_position


def test_positions_point_into_source_text() -> None:
    config = ChunkingConfig(max_tokens=60, overlap_tokens=10, min_chunk_length=10)
    text = _sentences(12)

    chunks = SentenceChunker(config).chunk(text)

    for chunk in chunks:
        assert text[chunk.start_position : chunk.end_position] == chunk.content


def test_short_chunks_are_dropped() -> None:
    config = ChunkingConfig(max_tokens=15, overlap_tokens=0, min_chunk_length=70)
    text = "Tiny. " + "This sentence is comfortably longer than the minimum chunk length here."

    chunks = SentenceChunker(config).chunk(text)

    assert len(chunks) == 1
    assert chunks[0].content.startswith("This sentence")
    assert chunks[0].chunk_index == 0


@pytest.mark.parametrize(
    "options",
    [
        {"max_tokens": 0},
        {"overlap_tokens": -1},
        {"min_chunk_length": -5},
        {"max_tokens": 50, "overlap_tokens": 50},
    ],
)
def test_invalid_chunking_config_rejected(options: dict[str, int]) -> None:
    with pytest.raises(InputError):
        validate_chunking_config(**options)


def test_from_options_merges_defaults() -> None:
    chunker = SentenceChunker.from_options(max_tokens=64)

    assert chunker.config.max_tokens == 64
    assert chunker.config.overlap_tokens == 50


def test_chunk_documents_skips_failures() -> None:
    chunked = chunk_documents({"good": "A perfectly normal sentence.", "empty": "   "})

    assert list(chunked) == ["good"]
    assert chunked["good"][0].content == "A perfectly normal sentence."
