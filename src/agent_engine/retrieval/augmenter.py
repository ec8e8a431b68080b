"""Injects retrieved knowledge into the latest user message."""

from __future__ import annotations

import dataclasses

from agent_engine.config import AugmentationConfig
from agent_engine.obs.logging import get_logger
from agent_engine.retrieval.hybrid import HybridRetriever
from agent_engine.types import HybridSearchResult, Message

logger = get_logger(__name__)


class RetrievalAugmenter:
    """Rewrites the last user message into a context block plus the question.

    Relevance is the fused score normalised by the best possible score (rank
    one on both sides), so `threshold` is comparable across weightings.
    Retrieval is best-effort: any failure, or no result above the threshold,
    leaves the messages untouched.
    """

    def __init__(
        self, retriever: HybridRetriever, config: AugmentationConfig | None = None
    ) -> None:
        self.retriever = retriever
        self.config = config or AugmentationConfig()

    def relevance(self, result: HybridSearchResult) -> float:
        retrieval = self.retriever.config
        best = (retrieval.vector_weight + retrieval.text_weight) / (retrieval.rrf_k + 1)
        if best <= 0:
            return 0.0
        return min(1.0, result.score / best)

    async def augment(self, messages: list[Message], scope: str) -> list[Message]:
        if not messages or messages[-1].role != "user":
            return messages
        last = messages[-1]
        query = last.text()
        if not query.strip():
            return messages

        try:
            results = await self.retriever.search(query, scope)
        except Exception as exc:
            logger.warning("augmentation_failed", scope=scope, error=str(exc))
            return messages

        relevant = [
            result for result in results if self.relevance(result) >= self.config.threshold
        ][: self.config.limit]
        if not relevant:
            return messages

        logger.info("context_injected", scope=scope, sources=len(relevant))
        rewritten = dataclasses.replace(last, content=self.format_context(query, relevant))
        return [*messages[:-1], rewritten]

    def format_context(self, query: str, results: list[HybridSearchResult]) -> str:
        plural = "" if len(results) == 1 else "s"
        parts = [
            "=== KNOWLEDGE BASE CONTEXT ===\n",
            f"Found {len(results)} relevant document{plural}:\n",
        ]
        for index, result in enumerate(results, start=1):
            name = result.document_id or "Unknown Document"
            percent = self.relevance(result) * 100
            parts.append(f"\n[Source {index}] {name} ({percent:.1f}% relevant)")
            parts.append(result.content)
            parts.append("")
        parts.append("\n=== END CONTEXT ===\n")
        parts.append(
            "Use the above context to answer the following question. "
            "Cite sources when possible.\n"
        )
        parts.append(f"Question: {query}")
        return "\n".join(parts)
