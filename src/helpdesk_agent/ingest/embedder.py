"""Embedding abstractions, the OpenAI client and a deterministic baseline."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt

from langchain_openai import OpenAIEmbeddings

from helpdesk_agent.errors import EmbeddingError

logger = logging.getLogger(__name__)


class Embedder(ABC):
    """Embedder interface used by the indexer and the retriever."""

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts; output order matches input order."""

    def embed_query(self, text: str) -> list[float]:
        """Embed one text as a single-item batch."""
        vectors = self.embed_documents([text])
        if len(vectors) != 1:
            raise EmbeddingError(f"expected 1 embedding, got {len(vectors)}")
        return vectors[0]


class OpenAIEmbedder(Embedder):
    """Embeds texts through the OpenAI embeddings endpoint.

    Provider failures and count mismatches are both reported as
    `EmbeddingError`; callers never receive a partial batch.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        client: OpenAIEmbeddings | None = None,
    ) -> None:
        self.model = model
        self._client = client or OpenAIEmbeddings(
            model=model,
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = self._client.embed_documents(texts)
        except Exception as exc:
            logger.warning("Embedding request failed for %d texts: %s", len(texts), exc)
            raise EmbeddingError(f"failed to create embeddings: {exc}") from exc

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"embedding count mismatch: sent {len(texts)}, received {len(vectors)}"
            )
        return [list(vector) for vector in vectors]


class HashingEmbedder(Embedder):
    """Deterministic sparse-like embedding without external model calls.

    Used by tests and local runs without an embedding provider.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in text.lower().split():
            digest = blake2b(token.strip(".,!?;:").encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            vector[idx] += -1.0 if digest[4] % 2 else 1.0

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]
