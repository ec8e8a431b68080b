"""Knowledge store interfaces and an in-memory implementation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from rank_bm25 import BM25Okapi

from agent_engine.ingest.embedder import cosine_similarity
from agent_engine.types import SearchHit, StoredChunk

_TOKEN = re.compile(r"\w+", flags=re.UNICODE)


def tokenize(text: str) -> list[str]:
    return [token.lower() for token in _TOKEN.findall(text)]


class VectorIndex(Protocol):
    """Nearest-neighbour search over chunk embeddings."""

    async def vector_search(
        self, embedding: list[float], scope: str, top_k: int
    ) -> list[SearchHit]:
        """Return hits ordered by similarity, best first."""


class TextIndex(Protocol):
    """Lexical search over chunk content."""

    async def text_search(self, query: str, scope: str, top_k: int) -> list[SearchHit]:
        """Return hits ordered by text relevance, best first."""


class ChunkLookup(Protocol):
    async def get_chunks(self, ids: list[str], scope: str) -> dict[str, StoredChunk]:
        """Resolve chunk ids within a scope to stored chunks; unknown ids are omitted."""


@dataclass(slots=True)
class _Record:
    chunk: StoredChunk
    embedding: list[float]
    tokens: list[str]


class InMemoryKnowledgeStore:
    """Vector index, BM25 index and chunk lookup over one in-process map.

    Every search and lookup is restricted to one scope (the organization id)
    and records are keyed by scope and chunk id, so two organizations can
    hold documents with the same id. The BM25 model for a scope is rebuilt
    lazily after writes touching that scope.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], _Record] = {}
        self._bm25_cache: dict[str, tuple[list[str], BM25Okapi]] = {}

    def __len__(self) -> int:
        return len(self._records)

    def upsert(self, chunks: list[StoredChunk], embeddings: list[list[float]]) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        for chunk, embedding in zip(chunks, embeddings, strict=True):
            self._records[(chunk.scope, chunk.id)] = _Record(
                chunk=chunk, embedding=embedding, tokens=tokenize(chunk.content)
            )
            self._bm25_cache.pop(chunk.scope, None)

    def delete_document(self, document_id: str, scope: str) -> int:
        doomed = [
            key for key, record in self._records.items()
            if key[0] == scope and record.chunk.document_id == document_id
        ]
        for key in doomed:
            del self._records[key]
        if doomed:
            self._bm25_cache.pop(scope, None)
        return len(doomed)

    async def vector_search(
        self, embedding: list[float], scope: str, top_k: int
    ) -> list[SearchHit]:
        scored = [
            SearchHit(id=record.chunk.id, score=cosine_similarity(embedding, record.embedding))
            for record in self._records.values()
            if record.chunk.scope == scope
        ]
        scored.sort(key=lambda hit: hit.score, reverse=True)
        return scored[:top_k]

    async def text_search(self, query: str, scope: str, top_k: int) -> list[SearchHit]:
        query_tokens = tokenize(query)
        if not query_tokens:
            return []
        cached = self._bm25_index(scope)
        if cached is None:
            return []
        ids, bm25 = cached
        scores = bm25.get_scores(query_tokens)
        wanted = set(query_tokens)
        hits = [
            SearchHit(id=chunk_id, score=float(score))
            for chunk_id, score in zip(ids, scores)
            if wanted.intersection(self._records[(scope, chunk_id)].tokens)
        ]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:top_k]

    async def get_chunks(self, ids: list[str], scope: str) -> dict[str, StoredChunk]:
        return {
            key: self._records[(scope, key)].chunk for key in ids if (scope, key) in self._records
        }

    def _bm25_index(self, scope: str) -> tuple[list[str], BM25Okapi] | None:
        cached = self._bm25_cache.get(scope)
        if cached is not None:
            return cached
        records = [
            record for record in self._records.values()
            if record.chunk.scope == scope and record.tokens
        ]
        if not records:
            return None
        cached = ([record.chunk.id for record in records], BM25Okapi([r.tokens for r in records]))
        self._bm25_cache[scope] = cached
        return cached
