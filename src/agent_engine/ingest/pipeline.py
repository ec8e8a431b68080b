"""Ingest pipeline: chunk -> embed -> index."""

from __future__ import annotations

from typing import Any, Protocol

from agent_engine.ingest.chunker import SentenceChunker
from agent_engine.ingest.embedder import Embedder
from agent_engine.obs.logging import get_logger
from agent_engine.types import StoredChunk

logger = get_logger(__name__)


class KnowledgeWriter(Protocol):
    def upsert(self, chunks: list[StoredChunk], embeddings: list[list[float]]) -> None:
        """Index chunks in both the vector and lexical indexes."""

    def delete_document(self, document_id: str, scope: str) -> int:
        """Remove every chunk of a document in one scope; return how many were removed."""


class IngestPipeline:
    """Coordinates chunker, embedder and knowledge store.

    Chunks are stored under `"<document_id>-<chunk_index>"` within the
    caller's scope. Re-ingesting a document replaces its previous chunks in
    that scope only.
    """

    def __init__(
        self,
        chunker: SentenceChunker,
        embedder: Embedder,
        store: KnowledgeWriter,
    ) -> None:
        self._chunker = chunker
        self._embedder = embedder
        self._store = store

    async def ingest_text(
        self,
        document_id: str,
        text: str,
        scope: str,
        metadata: dict[str, Any] | None = None,
    ) -> list[StoredChunk]:
        chunks = self._chunker.chunk(text)
        embeddings = await self._embedder.embed_batch([chunk.content for chunk in chunks])
        stored = [
            StoredChunk(
                id=f"{document_id}-{chunk.chunk_index}",
                document_id=document_id,
                scope=scope,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                metadata={
                    **(metadata or {}),
                    "start_position": chunk.start_position,
                    "end_position": chunk.end_position,
                    "token_count": chunk.token_count,
                    "has_overlap": chunk.has_overlap,
                },
            )
            for chunk in chunks
        ]
        replaced = self._store.delete_document(document_id, scope)
        self._store.upsert(stored, embeddings)
        logger.info(
            "document_ingested",
            document_id=document_id,
            scope=scope,
            chunks=len(stored),
            replaced=replaced,
        )
        return stored

    def delete_document(self, document_id: str, scope: str) -> int:
        removed = self._store.delete_document(document_id, scope)
        logger.info("document_deleted", document_id=document_id, scope=scope, chunks=removed)
        return removed
