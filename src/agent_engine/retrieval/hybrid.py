"""Dual-route hybrid retrieval: vector + lexical search fused with RRF."""

from __future__ import annotations

import asyncio

from agent_engine.config import RetrievalConfig
from agent_engine.ingest.embedder import Embedder
from agent_engine.obs.logging import get_logger
from agent_engine.retrieval.fusion import FusionLayer
from agent_engine.retrieval.store import ChunkLookup, TextIndex, VectorIndex
from agent_engine.types import HybridSearchResult, SearchHit

logger = get_logger(__name__)


class HybridRetriever:
    """Runs semantic and keyword retrieval concurrently and fuses them.

    Either side failing (including the query embedding) is logged and
    treated as an empty ranking, so one healthy backend still answers.
    Fused ids are resolved to chunk content through the lookup; ids the
    lookup no longer knows are dropped.
    """

    def __init__(
        self,
        embedder: Embedder,
        vector_index: VectorIndex,
        text_index: TextIndex,
        lookup: ChunkLookup,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.embedder = embedder
        self.vector_index = vector_index
        self.text_index = text_index
        self.lookup = lookup
        self.config = config or RetrievalConfig()
        self.fusion = FusionLayer(self.config)

    async def search(
        self,
        query: str,
        scope: str,
        *,
        vector_top_k: int | None = None,
        text_top_k: int | None = None,
        vector_weight: float | None = None,
        text_weight: float | None = None,
        min_score: float | None = None,
    ) -> list[HybridSearchResult]:
        vector_top_k = vector_top_k or self.config.vector_top_k
        text_top_k = text_top_k or self.config.text_top_k
        min_score = self.config.min_score if min_score is None else min_score

        vector_hits, text_hits = await asyncio.gather(
            self._vector_side(query, scope, vector_top_k),
            self._text_side(query, scope, text_top_k),
        )
        fused = [
            hit
            for hit in self.fusion.fuse(
                vector_hits, text_hits, vector_weight=vector_weight, text_weight=text_weight
            )
            if hit.score >= min_score
        ]
        if not fused:
            return []

        try:
            chunks = await self.lookup.get_chunks([hit.id for hit in fused], scope)
        except Exception as exc:
            logger.error("chunk_lookup_failed", scope=scope, error=str(exc))
            return []

        results = [
            HybridSearchResult(
                id=hit.id,
                content=chunks[hit.id].content,
                score=hit.score,
                source=hit.source,
                vector_score=hit.vector_score,
                text_score=hit.text_score,
                document_id=chunks[hit.id].document_id,
                chunk_index=chunks[hit.id].chunk_index,
            )
            for hit in fused
            if hit.id in chunks
        ]
        logger.debug(
            "hybrid_search",
            scope=scope,
            vector_hits=len(vector_hits),
            text_hits=len(text_hits),
            results=len(results),
        )
        return results

    async def _vector_side(self, query: str, scope: str, top_k: int) -> list[SearchHit]:
        try:
            embedding = await self.embedder.embed(query)
            return await self.vector_index.vector_search(embedding, scope, top_k)
        except Exception as exc:
            logger.warning("vector_search_failed", scope=scope, error=str(exc))
            return []

    async def _text_side(self, query: str, scope: str, top_k: int) -> list[SearchHit]:
        try:
            return await self.text_index.text_search(query, scope, top_k)
        except Exception as exc:
            logger.warning("text_search_failed", scope=scope, error=str(exc))
            return []
