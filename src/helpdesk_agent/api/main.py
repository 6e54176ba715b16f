"""FastAPI entrypoint for knowledge-base admin, agent messages and traces."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, status
from pydantic import BaseModel, Field

from helpdesk_agent.agent.http_tools import HttpToolExecutor
from helpdesk_agent.agent.llm import LangChainChatModel, Translator
from helpdesk_agent.agent.orchestrator import Orchestrator
from helpdesk_agent.agent.processor import AgentProcessor
from helpdesk_agent.agent.tools import ToolDependencies
from helpdesk_agent.config import Settings, get_settings
from helpdesk_agent.errors import (
    EmbeddingError,
    ModelCallError,
    NotFoundError,
    VectorIndexError,
)
from helpdesk_agent.ingest.chunker import SentenceChunker
from helpdesk_agent.ingest.embedder import Embedder, HashingEmbedder, OpenAIEmbedder
from helpdesk_agent.ingest.indexer import DocumentIndexer
from helpdesk_agent.ingest.jobs import IndexingQueue
from helpdesk_agent.obs.logs import configure_logging
from helpdesk_agent.obs.tracing import TraceStore
from helpdesk_agent.retrieval.retriever import KnowledgeRetriever
from helpdesk_agent.retrieval.vector_store import (
    InMemoryVectorIndex,
    QdrantVectorIndex,
    VectorIndex,
)
from helpdesk_agent.store.records import Message
from helpdesk_agent.store.sqlite import SupportStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    settings: Settings
    store: SupportStore
    vector_index: VectorIndex
    retriever: KnowledgeRetriever
    queue: IndexingQueue
    trace_store: TraceStore
    processor: AgentProcessor | None = None


def build_services(settings: Settings | None = None) -> Services:
    """Wire every component once from settings.

    Without an OpenAI key the service still indexes and searches with the
    hashing embedder, but agent replies are disabled. Without a Qdrant URL
    vectors live in memory.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    store = SupportStore(settings.database_path)
    embedder: Embedder
    if settings.openai_api_key:
        embedder = OpenAIEmbedder(
            settings.embedding_model,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout_seconds,
        )
    else:
        embedder = HashingEmbedder(dimension=settings.resolved_vector_size)

    vector_index: VectorIndex
    if settings.qdrant_url:
        vector_index = QdrantVectorIndex(
            settings.qdrant_url,
            settings.qdrant_collection,
            api_key=settings.qdrant_api_key,
            timeout=settings.vector_timeout_seconds,
        )
    else:
        vector_index = InMemoryVectorIndex(settings.qdrant_collection)
    try:
        vector_index.ensure_collection(settings.resolved_vector_size)
    except VectorIndexError as exc:
        logger.warning("Vector collection not ready at startup: %s", exc)

    retriever = KnowledgeRetriever(vector_index, embedder, settings.retrieval)
    indexer = DocumentIndexer(store, SentenceChunker(settings.chunking), embedder, vector_index)
    queue = IndexingQueue(indexer, store, max_workers=settings.index_workers)
    trace_store = TraceStore()

    processor = None
    if settings.openai_api_key:
        chat_model = LangChainChatModel(
            settings.chat_model,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout_seconds,
        )
        dependencies = ToolDependencies(
            store=store,
            retriever=retriever,
            translator=Translator(chat_model),
            http_executor=HttpToolExecutor(timeout=settings.tool_http_timeout_seconds),
        )
        orchestrator = Orchestrator(chat_model, settings.agent, trace_store)
        processor = AgentProcessor(orchestrator, dependencies, settings.agent)

    return Services(
        settings=settings,
        store=store,
        vector_index=vector_index,
        retriever=retriever,
        queue=queue,
        trace_store=trace_store,
        processor=processor,
    )


@lru_cache
def get_services() -> Services:
    return build_services()


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=20)
    score_threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class IncomingMessageRequest(BaseModel):
    conversation_id: int
    client_id: int
    body: str = Field(min_length=1)


app = FastAPI(title="Helpdesk Agent", version="0.1.0")


@app.get("/health")
def health(services: Services = Depends(get_services)) -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": services.processor is not None,
        "vector_backend": type(services.vector_index).__name__,
        "trace_count": len(services.trace_store.list_recent(limit=1000)),
    }


@app.get("/rag/stats")
def rag_stats(services: Services = Depends(get_services)) -> dict[str, Any]:
    try:
        collection = asdict(services.vector_index.collection_info())
    except VectorIndexError as exc:
        collection = {"error": str(exc)}
    return {
        "collection": collection,
        **services.store.chunk_stats(),
        "reindex": asdict(services.queue.status()),
    }


@app.post("/rag/documents/{document_id}/index", status_code=status.HTTP_202_ACCEPTED)
def index_document(document_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    if services.store.get_document(document_id) is None:
        raise HTTPException(status_code=404, detail=f"Document not found: {document_id}")
    services.queue.submit_index(document_id)
    return {"status": "queued", "document_id": document_id}


@app.delete("/rag/documents/{document_id}/index", status_code=status.HTTP_202_ACCEPTED)
def delete_document_index(
    document_id: str, services: Services = Depends(get_services)
) -> dict[str, Any]:
    services.queue.submit_delete(document_id)
    return {"status": "queued", "document_id": document_id}


@app.post("/rag/reindex", status_code=status.HTTP_202_ACCEPTED)
def reindex(services: Services = Depends(get_services)) -> dict[str, Any]:
    try:
        services.queue.reindex_all()
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"status": "started"}


@app.get("/rag/reindex-status")
def reindex_status(services: Services = Depends(get_services)) -> dict[str, Any]:
    return asdict(services.queue.status())


@app.post("/rag/search")
def search(request: SearchRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    try:
        results = services.retriever.search(request.query, request.limit, request.score_threshold)
    except (EmbeddingError, VectorIndexError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {
        "query": request.query,
        "results": [
            {
                "id": result.id,
                "score": result.score,
                "document_id": result.document_id,
                "document_title": result.document_title,
                "chunk_index": result.chunk_index,
                "content": result.chunk_content,
            }
            for result in results
        ],
    }


@app.get("/rag/indexed-documents")
def indexed_documents(services: Services = Depends(get_services)) -> dict[str, Any]:
    return {"items": services.store.indexed_documents()}


@app.post("/conversations/messages")
def incoming_message(
    request: IncomingMessageRequest, services: Services = Depends(get_services)
) -> dict[str, Any]:
    if services.processor is None:
        raise HTTPException(status_code=503, detail="Agent replies are not configured")
    try:
        services.store.get_conversation(request.conversation_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    message = services.store.add_message(
        Message(
            conversation_id=request.conversation_id,
            client_id=request.client_id,
            body=request.body,
        )
    )
    try:
        result = services.processor.process_incoming_message(message)
    except ModelCallError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    if result is None:
        return {"message_id": message.id, "handled": False}
    return {
        "message_id": message.id,
        "handled": True,
        "state": result.state.value,
        "reply": result.reply,
        "model_calls": result.model_calls,
        "trace_id": result.trace_id,
    }


@app.get("/traces")
def traces(limit: int = 20, services: Services = Depends(get_services)) -> dict[str, Any]:
    records = [asdict(record) for record in services.trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    try:
        record = services.trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics(services: Services = Depends(get_services)) -> dict[str, Any]:
    return services.trace_store.summary()
