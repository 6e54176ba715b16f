"""Background indexing on a bounded worker pool."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace

from helpdesk_agent.ingest.indexer import DocumentIndexer, IndexReport
from helpdesk_agent.store.sqlite import SupportStore

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ReindexStatus:
    running: bool = False
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    message: str = ""


class IndexingQueue:
    """Runs index, delete and full-reindex jobs off the calling thread.

    Every submission returns a `Future`; failures are logged when the job
    finishes, so callers may ignore the future without losing the error.
    """

    def __init__(
        self, indexer: DocumentIndexer, store: SupportStore, max_workers: int = 2
    ) -> None:
        self.indexer = indexer
        self.store = store
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="indexing"
        )
        self._status = ReindexStatus()
        self._status_lock = threading.Lock()

    def submit_index(self, document_id: str) -> Future[IndexReport]:
        future = self._executor.submit(self.indexer.index_document, document_id)
        future.add_done_callback(_log_failure("index", document_id))
        return future

    def submit_delete(self, document_id: str) -> Future[None]:
        future = self._executor.submit(self.indexer.delete_document_index, document_id)
        future.add_done_callback(_log_failure("delete", document_id))
        return future

    def reindex_all(self) -> Future[ReindexStatus]:
        """Start a full reindex of every published document.

        Raises `RuntimeError` when a reindex is already running.
        """
        with self._status_lock:
            if self._status.running:
                raise RuntimeError("Reindex already in progress")
            self._status = ReindexStatus(running=True, message="Starting reindex")
        future = self._executor.submit(self._run_reindex)
        future.add_done_callback(_log_failure("reindex", "all"))
        return future

    def status(self) -> ReindexStatus:
        with self._status_lock:
            return self._status

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run_reindex(self) -> ReindexStatus:
        try:
            document_ids = self.store.published_document_ids()
        except Exception as exc:
            self._update(running=False, message=f"Failed to list documents: {exc}")
            raise

        self._update(total=len(document_ids), message=f"Reindexing {len(document_ids)} documents")
        logger.info("Reindex started for %d documents", len(document_ids))

        for document_id in document_ids:
            try:
                self.indexer.index_document(document_id)
            except Exception as exc:
                logger.warning("Reindex failed for document %s: %s", document_id, exc)
                self._advance(succeeded=False)
            else:
                self._advance(succeeded=True)

        with self._status_lock:
            self._status = replace(
                self._status,
                running=False,
                message=(
                    f"Reindex complete: {self._status.succeeded} succeeded,"
                    f" {self._status.failed} failed"
                ),
            )
            final = self._status
        logger.info("%s", final.message)
        return final

    def _update(self, **changes: object) -> None:
        with self._status_lock:
            self._status = replace(self._status, **changes)

    def _advance(self, *, succeeded: bool) -> None:
        with self._status_lock:
            status = self._status
            self._status = replace(
                status,
                processed=status.processed + 1,
                succeeded=status.succeeded + int(succeeded),
                failed=status.failed + int(not succeeded),
            )


def _log_failure(operation: str, target: str):
    def _callback(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Indexing job %s for %s failed: %s", operation, target, exc)

    return _callback
