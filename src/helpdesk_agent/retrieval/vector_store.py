"""Vector index contract, a Qdrant REST adapter and an in-memory index."""

from __future__ import annotations

import logging
import threading
from math import sqrt
from typing import Any, Protocol

import httpx

from helpdesk_agent.errors import VectorIndexError
from helpdesk_agent.types import CollectionInfo, IndexedVector, SearchResult

logger = logging.getLogger(__name__)


class VectorIndex(Protocol):
    """Minimal vector index contract used by the indexer and retriever."""

    def ensure_collection(self, vector_size: int) -> None:
        """Create the collection if it does not exist."""

    def upsert(self, points: list[IndexedVector]) -> None:
        """Insert or replace points by id."""

    def delete_document(self, document_id: str, keep_generation: str | None = None) -> None:
        """Delete a document's points, optionally sparing one generation."""

    def delete_points(self, point_ids: list[str]) -> None:
        """Delete points by id."""

    def search(
        self, vector: list[float], limit: int, score_threshold: float
    ) -> list[SearchResult]:
        """Return at most `limit` hits scoring at least `score_threshold`, best first."""

    def collection_info(self) -> CollectionInfo:
        """Report existence and size of the collection."""

    def drop_collection(self) -> None:
        """Remove the collection and every point in it."""


class QdrantVectorIndex:
    """Qdrant adapter speaking the REST API through `httpx`.

    One `httpx.Client` with a fixed timeout is created per adapter and shared
    by every call; pass `client` to inject a transport in tests.
    """

    def __init__(
        self,
        url: str,
        collection: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.collection = collection
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["api-key"] = api_key
        self._client = client or httpx.Client(
            base_url=url.rstrip("/"), headers=headers, timeout=timeout
        )

    @property
    def _path(self) -> str:
        return f"/collections/{self.collection}"

    def ensure_collection(self, vector_size: int) -> None:
        info = self.collection_info()
        if info.exists:
            if info.vector_size is not None and info.vector_size != vector_size:
                logger.warning(
                    "Collection %s has vector size %s, expected %s",
                    self.collection,
                    info.vector_size,
                    vector_size,
                )
            return
        self._request(
            "PUT",
            self._path,
            json={"vectors": {"size": vector_size, "distance": "Cosine"}},
        )
        logger.info("Created collection %s (size=%d)", self.collection, vector_size)

    def upsert(self, points: list[IndexedVector]) -> None:
        if not points:
            return
        body = {
            "points": [
                {"id": point.id, "vector": point.vector, "payload": point.payload}
                for point in points
            ]
        }
        self._request("PUT", f"{self._path}/points", params={"wait": "true"}, json=body)

    def delete_document(self, document_id: str, keep_generation: str | None = None) -> None:
        selector: dict[str, Any] = {
            "must": [{"key": "document_id", "match": {"value": document_id}}]
        }
        if keep_generation is not None:
            selector["must_not"] = [
                {"key": "generation", "match": {"value": keep_generation}}
            ]
        self._request(
            "POST",
            f"{self._path}/points/delete",
            params={"wait": "true"},
            json={"filter": selector},
        )

    def delete_points(self, point_ids: list[str]) -> None:
        if not point_ids:
            return
        self._request(
            "POST",
            f"{self._path}/points/delete",
            params={"wait": "true"},
            json={"points": point_ids},
        )

    def search(
        self, vector: list[float], limit: int, score_threshold: float
    ) -> list[SearchResult]:
        body = {
            "vector": vector,
            "limit": limit,
            "with_payload": True,
            "score_threshold": score_threshold,
        }
        data = self._request("POST", f"{self._path}/points/search", json=body)
        try:
            return [
                SearchResult(
                    id=str(hit["id"]),
                    score=float(hit["score"]),
                    payload=dict(hit.get("payload") or {}),
                )
                for hit in data.get("result", [])
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise VectorIndexError(f"malformed search response: {exc}") from exc

    def collection_info(self) -> CollectionInfo:
        try:
            response = self._client.get(self._path)
        except httpx.HTTPError as exc:
            raise VectorIndexError(f"failed to reach vector index: {exc}") from exc
        if response.status_code == 404:
            return CollectionInfo(name=self.collection, exists=False)

        result = self._decode(response).get("result") or {}
        vectors = ((result.get("config") or {}).get("params") or {}).get("vectors") or {}
        return CollectionInfo(
            name=self.collection,
            exists=True,
            points_count=int(result.get("points_count") or 0),
            vector_size=vectors.get("size"),
            distance=vectors.get("distance"),
            status=result.get("status"),
        )

    def drop_collection(self) -> None:
        self._request("DELETE", self._path)
        logger.info("Dropped collection %s", self.collection)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise VectorIndexError(f"vector index request failed: {exc}") from exc
        return self._decode(response)

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            raise VectorIndexError(
                f"vector index error (status {response.status_code}): {response.text}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise VectorIndexError(f"invalid vector index response: {exc}") from exc
        if not isinstance(data, dict):
            raise VectorIndexError("invalid vector index response: expected an object")
        return data


class InMemoryVectorIndex:
    """Deterministic cosine index used for tests and local prototyping."""

    def __init__(self, collection: str = "knowledge_base") -> None:
        self.collection = collection
        self._points: dict[str, IndexedVector] = {}
        self._vector_size: int | None = None
        self._lock = threading.Lock()

    def ensure_collection(self, vector_size: int) -> None:
        with self._lock:
            if self._vector_size is None:
                self._vector_size = vector_size

    def upsert(self, points: list[IndexedVector]) -> None:
        with self._lock:
            for point in points:
                self._points[point.id] = point

    def delete_document(self, document_id: str, keep_generation: str | None = None) -> None:
        with self._lock:
            doomed = [
                point.id
                for point in self._points.values()
                if point.payload.get("document_id") == document_id
                and (keep_generation is None or point.payload.get("generation") != keep_generation)
            ]
            for point_id in doomed:
                del self._points[point_id]

    def delete_points(self, point_ids: list[str]) -> None:
        with self._lock:
            for point_id in point_ids:
                self._points.pop(point_id, None)

    def search(
        self, vector: list[float], limit: int, score_threshold: float
    ) -> list[SearchResult]:
        with self._lock:
            points = list(self._points.values())
        scored = [
            SearchResult(
                id=point.id,
                score=_cosine_similarity(vector, point.vector),
                payload=dict(point.payload),
            )
            for point in points
        ]
        ranked = sorted(
            (hit for hit in scored if hit.score >= score_threshold),
            key=lambda hit: hit.score,
            reverse=True,
        )
        return ranked[:limit]

    def collection_info(self) -> CollectionInfo:
        with self._lock:
            return CollectionInfo(
                name=self.collection,
                exists=self._vector_size is not None or bool(self._points),
                points_count=len(self._points),
                vector_size=self._vector_size,
                distance="Cosine",
            )

    def drop_collection(self) -> None:
        with self._lock:
            self._points.clear()
            self._vector_size = None

    def points(self) -> list[IndexedVector]:
        with self._lock:
            return list(self._points.values())


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
