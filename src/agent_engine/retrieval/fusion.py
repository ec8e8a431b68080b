"""Weighted reciprocal rank fusion of vector and text rankings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from agent_engine.config import RetrievalConfig
from agent_engine.types import SearchHit


@dataclass(slots=True)
class FusedHit:
    id: str
    score: float
    source: Literal["vector", "text", "both"]
    vector_score: float | None = None
    text_score: float | None = None


class FusionLayer:
    """Fuses two ranked lists with weighted RRF.

    Each list contributes `weight / (k + rank)` per id, with 1-based ranks.
    Ids keep first-seen order (vector list first) before a stable sort by
    fused score, so ties resolve deterministically.
    """

    def __init__(self, config: RetrievalConfig | None = None) -> None:
        self.config = config or RetrievalConfig()

    def fuse(
        self,
        vector_hits: list[SearchHit],
        text_hits: list[SearchHit],
        *,
        vector_weight: float | None = None,
        text_weight: float | None = None,
    ) -> list[FusedHit]:
        vector_weight = self.config.vector_weight if vector_weight is None else vector_weight
        text_weight = self.config.text_weight if text_weight is None else text_weight
        k = self.config.rrf_k

        vector_rank = {hit.id: (rank, hit.score) for rank, hit in enumerate(vector_hits, start=1)}
        text_rank = {hit.id: (rank, hit.score) for rank, hit in enumerate(text_hits, start=1)}

        ordered_ids = list(dict.fromkeys([hit.id for hit in vector_hits] + [hit.id for hit in text_hits]))
        fused: list[FusedHit] = []
        for chunk_id in ordered_ids:
            in_vector = vector_rank.get(chunk_id)
            in_text = text_rank.get(chunk_id)
            score = 0.0
            if in_vector is not None:
                score += vector_weight / (k + in_vector[0])
            if in_text is not None:
                score += text_weight / (k + in_text[0])
            if in_vector is not None and in_text is not None:
                source: Literal["vector", "text", "both"] = "both"
            elif in_vector is not None:
                source = "vector"
            else:
                source = "text"
            fused.append(
                FusedHit(
                    id=chunk_id,
                    score=score,
                    source=source,
                    vector_score=in_vector[1] if in_vector else None,
                    text_score=in_text[1] if in_text else None,
                )
            )

        fused.sort(key=lambda item: item.score, reverse=True)
        return fused
