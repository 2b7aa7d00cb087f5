"""
FastAPI service layer for the notebook RAG system.

Exposes ingestion, grounded query (plain and Server-Sent Events streaming),
retrieval-only search, conversation memory, tenant/chunk administration and
GET /metrics.

Run with:
    uvicorn notebookrag.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, model_validator

from .errors import InvalidInput, RAGError, rag_error_to_http
from .metrics import MetricsCollector, metrics_collector
from .observability import get_logger
from .rag_service import IngestDocument, RetrievalOrchestrator, StreamEvent, build_orchestrator
from .vector_store import TenantKey

logger = get_logger(__name__)

_THREAD_POOL_WORKERS = 8       # Store calls run off the event loop.


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class TenantModel(BaseModel):
    """Omit both fields for the global knowledge base."""

    notebook_id: str | None = Field(default=None, description="Notebook owning the chunks")
    user_id: str | None = Field(default=None, description="Owner of the notebook")

    @model_validator(mode="after")
    def _check_pair(self):
        if bool(self.notebook_id) != bool(self.user_id):
            raise ValueError("notebook_id and user_id must be given together")
        if ":" in (self.notebook_id or "") or ":" in (self.user_id or ""):
            raise ValueError("notebook_id and user_id must not contain ':'")
        return self

    def to_key(self) -> TenantKey:
        if self.notebook_id:
            return TenantKey.notebook(self.notebook_id, self.user_id)
        return TenantKey.global_scope()


class DocumentModel(BaseModel):
    text: str = Field(..., min_length=1, description="Extracted plain text")
    title: str = ""
    category: str = ""
    tags: dict[str, bool] = Field(default_factory=dict)
    source_name: str | None = None


class IngestRequest(BaseModel):
    tenant: TenantModel = Field(default_factory=TenantModel)
    documents: list[DocumentModel] = Field(..., min_length=1)
    skip_duplicates: bool = False


class ReindexRequest(BaseModel):
    tenant: TenantModel
    documents: list[DocumentModel] = Field(..., min_length=1)


class IngestResponse(BaseModel):
    chunks_added: int
    chunk_count: int
    documents_added: int
    skipped_duplicates: int
    chunks_removed: int = 0
    chunk_ids: list[str]
    errors: list[dict[str, Any]]
    success: bool


class QueryRequest(BaseModel):
    tenant: TenantModel = Field(default_factory=TenantModel)
    question: str = Field(..., description="User question")
    k: int | None = Field(default=None, ge=1, le=50)
    score_threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    include_memory: bool = True
    session_key: str | None = Field(
        default=None,
        description="Conversation memory key; defaults to the tenant key",
    )
    source_filter: str | None = None


class SourceModel(BaseModel):
    chunk_id: str
    title: str
    score: float | None
    excerpt: str
    category: str = ""
    source_name: str = ""


class QueryResponse(BaseModel):
    answer: str
    sources: list[SourceModel]
    confidence: float
    total_sources: int
    grounded: bool
    success: bool
    state: str
    tier: str | None
    session_key: str | None
    latency_ms: float


class SearchRequest(BaseModel):
    tenant: TenantModel = Field(default_factory=TenantModel)
    query: str
    k: int | None = Field(default=None, ge=1, le=50)
    score_threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    source_filter: str | None = None


class ChunkUpdateRequest(BaseModel):
    title: str | None = None
    category: str | None = None
    tags: dict[str, bool] | None = None


def _tenant_from_query(
    notebook_id: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
) -> TenantModel:
    try:
        return TenantModel(notebook_id=notebook_id, user_id=user_id)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _explicit_tenant_from_query(
    notebook_id: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    scope: str | None = Query(default=None, description="Pass 'global' to target the global knowledge base"),
) -> TenantKey:
    """Destructive routes never fall back to the global base silently."""
    key = _tenant_from_query(notebook_id, user_id).to_key()
    if key.is_global and scope != "global":
        raise HTTPException(
            status_code=422,
            detail="Give notebook_id and user_id, or scope=global for the global knowledge base",
        )
    return key


def _documents(models: list[DocumentModel]) -> list[IngestDocument]:
    return [
        IngestDocument(
            text=doc.text,
            title=doc.title,
            category=doc.category,
            tags=doc.tags,
            source_name=doc.source_name,
        )
        for doc in models
    ]


def _optional_tenant_from_query(
    notebook_id: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
) -> TenantKey | None:
    if not notebook_id and not user_id:
        return None
    return _tenant_from_query(notebook_id, user_id).to_key()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _orchestrator(request: Request) -> RetrievalOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="RAG service is not initialized.")
    return orchestrator


def _metrics(request: Request) -> MetricsCollector:
    return getattr(request.app.state, "metrics", None) or metrics_collector


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _sse(event: StreamEvent) -> str:
    payload = json.dumps(event.to_dict(), ensure_ascii=False)
    return f"event: {event.event_type}\ndata: {payload}\n\n"


def _to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, RAGError):
        return rag_error_to_http(exc)
    logger.error("request_failed", error_type=type(exc).__name__, error=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    orchestrator: RetrievalOrchestrator | None = None,
    *,
    collector: MetricsCollector | None = None,
) -> FastAPI:
    """Builds the API; an injected orchestrator is used as-is and left open on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        executor = None
        owned = orchestrator is None
        if owned:
            executor = ThreadPoolExecutor(max_workers=_THREAD_POOL_WORKERS)
            app.state.orchestrator = build_orchestrator(executor=executor)
        else:
            app.state.orchestrator = orchestrator
        app.state.metrics = collector or metrics_collector
        logger.info("api_started", owned_orchestrator=owned)

        yield  # Application is running.

        # Shutdown: release resources.
        if owned:
            app.state.orchestrator.close()
        if executor is not None:
            executor.shutdown(wait=False)
        app.state.orchestrator = None

    app = FastAPI(
        title="Notebook RAG API",
        description="Tenant-scoped retrieval-augmented question answering",
        version="1.0.0",
        lifespan=lifespan,
    )

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    @app.post("/ingest", response_model=IngestResponse)
    async def ingest_endpoint(
        body: IngestRequest,
        service: RetrievalOrchestrator = Depends(_orchestrator),
        metrics: MetricsCollector = Depends(_metrics),
    ):
        """Chunk, embed and store documents for one tenant."""
        start = time.perf_counter()
        documents = _documents(body.documents)
        try:
            report = await service.ingest(body.tenant.to_key(), documents, skip_duplicates=body.skip_duplicates)
        except Exception as exc:
            metrics.record_request(_elapsed_ms(start), success=False, endpoint="ingest")
            raise _to_http(exc) from exc
        metrics.record_request(_elapsed_ms(start), success=report.success, endpoint="ingest")
        return IngestResponse(**report.to_dict())

    @app.put("/tenants/documents", response_model=IngestResponse)
    async def reindex_endpoint(
        body: ReindexRequest,
        service: RetrievalOrchestrator = Depends(_orchestrator),
        metrics: MetricsCollector = Depends(_metrics),
    ):
        """Replace all of a tenant's chunks with the given documents."""
        start = time.perf_counter()
        try:
            report = await service.reindex(body.tenant.to_key(), _documents(body.documents))
        except Exception as exc:
            metrics.record_request(_elapsed_ms(start), success=False, endpoint="reindex")
            raise _to_http(exc) from exc
        metrics.record_request(_elapsed_ms(start), success=report.success, endpoint="reindex")
        return IngestResponse(**report.to_dict())

    @app.post("/query", response_model=QueryResponse)
    async def query_endpoint(
        body: QueryRequest,
        service: RetrievalOrchestrator = Depends(_orchestrator),
        metrics: MetricsCollector = Depends(_metrics),
    ):
        """Answer a question from the tenant's documents."""
        start = time.perf_counter()
        try:
            result = await service.query(
                body.tenant.to_key(),
                body.question,
                k=body.k,
                score_threshold=body.score_threshold,
                include_memory=body.include_memory,
                session_key=body.session_key,
                source_filter=body.source_filter,
            )
        except Exception as exc:
            metrics.record_request(_elapsed_ms(start), success=False, endpoint="query")
            raise _to_http(exc) from exc

        latency_ms = _elapsed_ms(start)
        metrics.record_request(
            latency_ms,
            success=result.success,
            endpoint="query",
            grounded=result.grounded,
            tier=result.tier,
            confidence=result.confidence,
        )
        return QueryResponse(**result.to_dict(), latency_ms=round(latency_ms, 2))

    @app.post("/query/stream")
    async def query_stream_endpoint(
        body: QueryRequest,
        service: RetrievalOrchestrator = Depends(_orchestrator),
        metrics: MetricsCollector = Depends(_metrics),
    ):
        """Same as /query, delivered as metadata -> chunk* -> complete|error SSE events."""
        start = time.perf_counter()
        try:
            stream = await service.stream_query(
                body.tenant.to_key(),
                body.question,
                k=body.k,
                score_threshold=body.score_threshold,
                include_memory=body.include_memory,
                session_key=body.session_key,
                source_filter=body.source_filter,
            )
        except Exception as exc:
            metrics.record_request(_elapsed_ms(start), success=False, endpoint="query_stream")
            raise _to_http(exc) from exc

        async def event_source():
            try:
                async with stream:
                    async for event in stream:
                        yield _sse(event)
            finally:
                result = stream.result
                metrics.record_request(
                    _elapsed_ms(start),
                    success=bool(result and result.success),
                    endpoint="query_stream",
                    grounded=result.grounded if result else False,
                    tier=result.tier if result else None,
                    confidence=result.confidence if result else None,
                )

        return StreamingResponse(
            event_source(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/search")
    async def search_endpoint(
        body: SearchRequest,
        service: RetrievalOrchestrator = Depends(_orchestrator),
        metrics: MetricsCollector = Depends(_metrics),
    ):
        """Retrieval only: ranked chunks without a generated answer."""
        start = time.perf_counter()
        try:
            payload = await service.search_documents(
                body.tenant.to_key(),
                body.query,
                k=body.k,
                score_threshold=body.score_threshold,
                source_filter=body.source_filter,
            )
        except Exception as exc:
            metrics.record_request(_elapsed_ms(start), success=False, endpoint="search")
            raise _to_http(exc) from exc
        metrics.record_request(_elapsed_ms(start), success=True, endpoint="search", tier=payload["tier"])
        return payload

    @app.get("/memory/{session_key}")
    async def get_memory_endpoint(session_key: str, service: RetrievalOrchestrator = Depends(_orchestrator)):
        turns = service.memory_turns(session_key)
        return {"session_key": session_key, "turns": turns, "total_turns": len(turns)}

    @app.delete("/memory/{session_key}")
    async def clear_memory_endpoint(session_key: str, service: RetrievalOrchestrator = Depends(_orchestrator)):
        cleared = service.clear_memory(session_key)
        return {"ok": True, "cleared": cleared}

    @app.delete("/tenants")
    async def delete_tenant_endpoint(
        key: TenantKey = Depends(_explicit_tenant_from_query),
        service: RetrievalOrchestrator = Depends(_orchestrator),
    ):
        try:
            deleted = await service.delete_tenant(key)
        except Exception as exc:
            raise _to_http(exc) from exc
        return {"tenant": key.storage_key, "deleted_count": deleted}

    @app.delete("/tenants/sources/{source_name}")
    async def delete_source_endpoint(
        source_name: str,
        key: TenantKey = Depends(_explicit_tenant_from_query),
        service: RetrievalOrchestrator = Depends(_orchestrator),
    ):
        try:
            deleted = await service.delete_source(key, source_name)
        except Exception as exc:
            raise _to_http(exc) from exc
        return {"tenant": key.storage_key, "source_name": source_name, "deleted_count": deleted}

    @app.get("/tenants/stats")
    async def tenant_stats_endpoint(
        tenant: TenantModel = Depends(_tenant_from_query),
        service: RetrievalOrchestrator = Depends(_orchestrator),
    ):
        return await service.tenant_stats(tenant.to_key())

    @app.patch("/chunks/{chunk_id}")
    async def update_chunk_endpoint(
        chunk_id: str,
        body: ChunkUpdateRequest,
        tenant: TenantKey | None = Depends(_optional_tenant_from_query),
        service: RetrievalOrchestrator = Depends(_orchestrator),
    ):
        try:
            chunk = await service.update_chunk(
                chunk_id,
                tenant=tenant,
                title=body.title,
                category=body.category,
                tags=body.tags,
            )
        except InvalidInput as exc:
            raise rag_error_to_http(exc) from exc
        if chunk is None:
            raise HTTPException(status_code=404, detail="Chunk not found")
        return {
            "chunk_id": chunk.id,
            "title": chunk.title,
            "category": chunk.category,
            "tags": chunk.tags,
            "updated_at": chunk.updated_at,
        }

    @app.delete("/chunks/{chunk_id}")
    async def delete_chunk_endpoint(
        chunk_id: str,
        tenant: TenantKey | None = Depends(_optional_tenant_from_query),
        service: RetrievalOrchestrator = Depends(_orchestrator),
    ):
        deleted = await service.delete_chunk(chunk_id, tenant=tenant)
        if not deleted:
            raise HTTPException(status_code=404, detail="Chunk not found")
        return {"ok": True, "chunk_id": chunk_id}

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsCollector = Depends(_metrics)):
        """Return aggregated service metrics."""
        return metrics.get_summary()

    return app


app = create_app()
