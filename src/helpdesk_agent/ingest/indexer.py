"""Builds and removes the searchable representation of knowledge documents."""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from helpdesk_agent.errors import IndexingError, NotFoundError, VectorIndexError
from helpdesk_agent.ingest.chunker import SentenceChunker
from helpdesk_agent.ingest.embedder import Embedder
from helpdesk_agent.retrieval.vector_store import VectorIndex
from helpdesk_agent.store.sqlite import SupportStore
from helpdesk_agent.types import Chunk, IndexedVector, KnowledgeDocument

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class IndexReport:
    document_id: str
    chunk_count: int
    total_tokens: int
    generation: str | None = None
    skipped: bool = False


class DocumentIndexer:
    """Chunks, embeds and upserts one document at a time.

    A run writes the new vectors under a fresh generation id before touching
    the old ones, then removes every vector of the document from other
    generations. If the upsert or the chunk rows fail, the new points are
    discarded and the previous generation is still intact and searchable.

    Operations on the same document are serialized; different documents may
    be indexed concurrently from worker threads.
    """

    def __init__(
        self,
        store: SupportStore,
        chunker: SentenceChunker,
        embedder: Embedder,
        vector_index: VectorIndex,
    ) -> None:
        self.store = store
        self.chunker = chunker
        self.embedder = embedder
        self.vector_index = vector_index
        self._locks: dict[str, tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    def index_document(self, document_id: str) -> IndexReport:
        with self._document_lock(document_id):
            document = self.store.get_document(document_id)
            if document is None:
                raise NotFoundError(f"Document not found: {document_id}")
            if not document.is_published:
                logger.debug("Document %s is not published, skipping", document_id)
                return IndexReport(document_id=document_id, chunk_count=0, total_tokens=0, skipped=True)
            return self._index(document)

    def delete_document_index(self, document_id: str) -> None:
        with self._document_lock(document_id):
            self._remove(document_id)

    def _index(self, document: KnowledgeDocument) -> IndexReport:
        chunks = self.chunker.chunk(_document_text(document))
        if not chunks:
            self._remove(document.id)
            logger.info("Document %s produced no chunks; index cleared", document.id)
            return IndexReport(document_id=document.id, chunk_count=0, total_tokens=0)

        vectors = self.embedder.embed_documents([chunk.content for chunk in chunks])
        generation = uuid.uuid4().hex
        points = _build_points(document, chunks, vectors, generation)

        try:
            self.vector_index.upsert(points)
        except VectorIndexError as exc:
            self._discard_partial(document.id, points)
            raise IndexingError(
                f"failed to upsert vectors for document {document.id}: {exc}"
            ) from exc

        try:
            self.store.replace_chunks(document.id, chunks, generation)
        except sqlite3.Error as exc:
            self._discard_partial(document.id, points)
            raise IndexingError(
                f"failed to store chunk rows for document {document.id}: {exc}"
            ) from exc

        try:
            self.vector_index.delete_document(document.id, keep_generation=generation)
        except VectorIndexError as exc:
            logger.error(
                "Index inconsistency: stale vectors of document %s remain beside generation %s: %s",
                document.id,
                generation,
                exc,
            )
            raise IndexingError(
                f"failed to remove stale vectors for document {document.id}: {exc}"
            ) from exc

        total_tokens = sum(chunk.token_count for chunk in chunks)
        logger.info(
            "Indexed document %s: %d chunks, %d tokens", document.id, len(chunks), total_tokens
        )
        return IndexReport(
            document_id=document.id,
            chunk_count=len(chunks),
            total_tokens=total_tokens,
            generation=generation,
        )

    def _remove(self, document_id: str) -> None:
        try:
            self.vector_index.delete_document(document_id)
        except VectorIndexError as exc:
            raise IndexingError(
                f"failed to delete vectors for document {document_id}: {exc}"
            ) from exc
        removed = self.store.delete_chunks(document_id)
        logger.info("Removed index for document %s (%d chunk rows)", document_id, removed)

    def _discard_partial(self, document_id: str, points: list[IndexedVector]) -> None:
        try:
            self.vector_index.delete_points([point.id for point in points])
        except VectorIndexError as exc:
            logger.error(
                "Index inconsistency: partial upsert for document %s could not be removed: %s",
                document_id,
                exc,
            )

    @contextmanager
    def _document_lock(self, document_id: str) -> Iterator[None]:
        # Entries are counted so a lock is dropped once nobody holds or awaits it.
        with self._locks_guard:
            entry = self._locks.get(document_id)
            lock, users = entry if entry is not None else (threading.Lock(), 0)
            self._locks[document_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                _, users = self._locks[document_id]
                if users == 1:
                    del self._locks[document_id]
                else:
                    self._locks[document_id] = (lock, users - 1)


def _document_text(document: KnowledgeDocument) -> str:
    parts = [part for part in (document.title, document.excerpt, document.body) if part.strip()]
    return "\n\n".join(parts)


def _build_points(
    document: KnowledgeDocument,
    chunks: list[Chunk],
    vectors: list[list[float]],
    generation: str,
) -> list[IndexedVector]:
    points: list[IndexedVector] = []
    for chunk, vector in zip(chunks, vectors, strict=True):
        payload = {
            "document_id": document.id,
            "document_title": document.title,
            "chunk_index": chunk.index,
            "chunk_content": chunk.content,
            "token_count": chunk.token_count,
            "generation": generation,
        }
        if document.excerpt:
            payload["excerpt"] = document.excerpt
        points.append(IndexedVector(id=str(uuid.uuid4()), vector=vector, payload=payload))
    return points
