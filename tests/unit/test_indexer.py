import sqlite3
import threading
import time

import pytest

from helpdesk_agent.config import ChunkingConfig
from helpdesk_agent.errors import IndexingError, NotFoundError, VectorIndexError
from helpdesk_agent.ingest.chunker import SentenceChunker
from helpdesk_agent.ingest.embedder import HashingEmbedder
from helpdesk_agent.ingest.indexer import DocumentIndexer
from helpdesk_agent.ingest.jobs import IndexingQueue
from helpdesk_agent.retrieval.vector_store import InMemoryVectorIndex
from helpdesk_agent.types import KnowledgeDocument


class FlakyIndex(InMemoryVectorIndex):
    """Writes part of a batch and then fails while `fail_upsert` is set."""

    fail_upsert = False

    def upsert(self, points) -> None:
        if self.fail_upsert:
            super().upsert(points[:1])
            raise VectorIndexError("connection reset")
        super().upsert(points)


def _article(topic: str, sentences: int = 12) -> str:
    return " ".join(
        f"Section {i} explains how {topic} works for every customer account." for i in range(sentences)
    )


@pytest.fixture
def vector_index() -> FlakyIndex:
    return FlakyIndex()


@pytest.fixture
def indexer(store, vector_index) -> DocumentIndexer:
    store.save_document(
        KnowledgeDocument(
            id="doc-1",
            title="Billing guide",
            excerpt="How billing works.",
            body=_article("billing"),
            status="published",
        )
    )
    store.save_document(
        KnowledgeDocument(id="draft", title="Draft", body=_article("drafts"), status="draft")
    )
    chunker = SentenceChunker(ChunkingConfig(max_tokens=60, overlap_tokens=10))
    return DocumentIndexer(store, chunker, HashingEmbedder(dimension=64), vector_index)


def test_index_document_writes_points_and_chunk_rows(store, indexer, vector_index) -> None:
    report = indexer.index_document("doc-1")

    points = vector_index.points()
    assert report.chunk_count > 1
    assert report.chunk_count == len(points) == len(store.chunks("doc-1"))
    assert report.total_tokens == sum(chunk.token_count for chunk in store.chunks("doc-1"))
    assert {point.payload["generation"] for point in points} == {report.generation}
    assert sorted(point.payload["chunk_index"] for point in points) == list(
        range(report.chunk_count)
    )
    assert all(point.payload["document_title"] == "Billing guide" for point in points)
    assert all(point.payload["excerpt"] == "How billing works." for point in points)
    assert store.chunks("doc-1")[0].content.startswith("Billing guide How billing works.")


def test_reindexing_replaces_the_previous_generation(store, indexer, vector_index) -> None:
    first = indexer.index_document("doc-1")
    second = indexer.index_document("doc-1")

    points = vector_index.points()
    assert first.generation != second.generation
    assert len(points) == second.chunk_count == first.chunk_count
    assert {point.payload["generation"] for point in points} == {second.generation}
    assert store.chunk_stats()["total_chunks"] == second.chunk_count


def test_failed_upsert_keeps_previous_generation(store, indexer, vector_index) -> None:
    first = indexer.index_document("doc-1")
    before = {point.id for point in vector_index.points()}

    vector_index.fail_upsert = True
    with pytest.raises(IndexingError, match="failed to upsert"):
        indexer.index_document("doc-1")

    assert {point.id for point in vector_index.points()} == before
    assert {point.payload["generation"] for point in vector_index.points()} == {first.generation}
    assert len(store.chunks("doc-1")) == first.chunk_count


def test_failed_chunk_rows_discard_the_new_generation(store, indexer, vector_index, monkeypatch) -> None:
    first = indexer.index_document("doc-1")
    before = {point.id for point in vector_index.points()}

    def _locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "replace_chunks", _locked)
    with pytest.raises(IndexingError, match="failed to store chunk rows"):
        indexer.index_document("doc-1")

    assert {point.id for point in vector_index.points()} == before
    assert {point.payload["generation"] for point in vector_index.points()} == {first.generation}
    assert len(store.chunks("doc-1")) == first.chunk_count


def test_unpublished_document_is_skipped(indexer, vector_index) -> None:
    report = indexer.index_document("draft")

    assert report.skipped is True
    assert report.chunk_count == 0
    assert vector_index.points() == []


def test_missing_document_raises(indexer) -> None:
    with pytest.raises(NotFoundError):
        indexer.index_document("nope")


def test_emptied_document_clears_its_index(store, indexer, vector_index) -> None:
    indexer.index_document("doc-1")
    store.save_document(KnowledgeDocument(id="doc-1", title="  ", status="published"))

    report = indexer.index_document("doc-1")

    assert report.chunk_count == 0
    assert vector_index.points() == []
    assert store.chunks("doc-1") == []


def test_delete_document_index(store, indexer, vector_index) -> None:
    indexer.index_document("doc-1")

    indexer.delete_document_index("doc-1")

    assert vector_index.points() == []
    assert store.chunks("doc-1") == []
    assert store.indexed_documents() == []


class BlockingEmbedder(HashingEmbedder):
    """Holds every call until released and records how many overlap."""

    def __init__(self) -> None:
        super().__init__(dimension=64)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            self.release.wait(timeout=5)
            return super().embed_documents(texts)
        finally:
            with self._guard:
                self.active -= 1


def test_concurrent_runs_on_one_document_are_serialized(store, indexer, vector_index) -> None:
    embedder = BlockingEmbedder()
    indexer.embedder = embedder
    queue = IndexingQueue(indexer, store, max_workers=2)
    try:
        first = queue.submit_index("doc-1")
        second = queue.submit_index("doc-1")
        assert embedder.entered.wait(timeout=5)
        time.sleep(0.1)
        embedder.release.set()
        reports = [first.result(timeout=10), second.result(timeout=10)]
    finally:
        embedder.release.set()
        queue.shutdown(wait=True)

    assert embedder.max_active == 1
    points = vector_index.points()
    generations = {point.payload["generation"] for point in points}
    assert len(generations) == 1
    assert generations <= {report.generation for report in reports}
    assert len(points) == len(store.chunks("doc-1")) == reports[0].chunk_count
    assert sorted(point.payload["chunk_content"] for point in points) == sorted(
        chunk.content for chunk in store.chunks("doc-1")
    )


def test_document_locks_are_released_after_use(indexer) -> None:
    indexer.index_document("doc-1")
    indexer.index_document("draft")
    indexer.delete_document_index("doc-1")

    with pytest.raises(NotFoundError):
        indexer.index_document("nope")

    assert indexer._locks == {}
