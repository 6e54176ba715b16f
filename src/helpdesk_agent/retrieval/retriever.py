"""Knowledge-base retriever producing ranked hits and a model-ready context."""

from __future__ import annotations

import logging

from helpdesk_agent.config import RetrievalConfig
from helpdesk_agent.ingest.embedder import Embedder
from helpdesk_agent.retrieval.vector_store import VectorIndex
from helpdesk_agent.types import KnowledgeSource, RetrievedContext, SearchResult

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "Relevant knowledge base information:\n\n"


class KnowledgeRetriever:
    """Embeds a query and searches the vector index.

    Hits are returned exactly in the order the index produced them. The index
    already sorts by descending score, and re-sorting here could reorder ties
    differently from what the index considers best.
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.vector_index = vector_index
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    def search(
        self,
        query: str,
        limit: int | None = None,
        score_threshold: float | None = None,
    ) -> list[SearchResult]:
        query = query.strip()
        if not query:
            return []

        requested = self.config.top_k if limit is None else limit
        final_limit = min(requested, self.config.max_limit)
        if final_limit <= 0:
            return []
        threshold = self.config.score_threshold if score_threshold is None else score_threshold

        vector = self.embedder.embed_query(query)
        results = self.vector_index.search(vector, final_limit, threshold)
        logger.debug("Search for %r returned %d results", query, len(results))
        return results

    def search_with_context(self, query: str, limit: int | None = None) -> RetrievedContext:
        results = self.search(query, limit)
        if not results:
            return RetrievedContext(text="", sources=[], results=[])

        parts = [CONTEXT_HEADER]
        sources: list[KnowledgeSource] = []
        seen: set[str] = set()
        for position, result in enumerate(results, start=1):
            parts.append(
                f"--- Source {position}: {result.document_title} ---\n{result.chunk_content}\n\n"
            )
            if result.document_id not in seen:
                seen.add(result.document_id)
                sources.append(
                    KnowledgeSource(
                        document_id=result.document_id,
                        title=result.document_title,
                        score=result.score,
                    )
                )

        return RetrievedContext(text="".join(parts), sources=sources, results=results)
