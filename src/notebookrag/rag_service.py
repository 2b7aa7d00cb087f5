# /notebookrag/rag_service.py
"""
Retrieval orchestration: ingest documents into a tenant's vector space and
answer questions from it.

A query always walks the same states:

    VALIDATING -> EMBEDDING -> RETRIEVING -> PROMPTING -> GENERATING -> COMPLETED

FAILED is reachable from every state; CANCELLED only while a streamed answer
is being generated. Retrieval is finished before any token is produced, and
the conversation turn is written only after generation completes, so failed
or cancelled answers never touch memory.
"""
from __future__ import annotations

import asyncio
import functools
import time
from concurrent.futures import Executor
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, ClassVar, Iterable

from langchain_core.messages import BaseMessage

from .chunking import ChunkingPipeline
from .config import (
    CHROMA_COLLECTION,
    CHROMA_DIR,
    CONFIDENCE_BASELINE,
    DB_PATH,
    DEDUP_SCORE_THRESHOLD,
    DEFAULT_TOP_K,
    FALLBACK_EXCERPT_CHARS,
    INGEST_MAX_CONCURRENCY,
    NATIVE_VECTOR_SEARCH,
    QUERY_SCORE_THRESHOLD,
    SOURCE_EXCERPT_CHARS,
    STREAM_QUEUE_SIZE,
    TEXT_FALLBACK_SCORE,
)
from .embedding_client import EmbeddingClient
from .errors import GenerationFailed, InvalidInput, RAGError
from .llm_client import LLMClient, strip_reasoning
from .memory_manager import MemoryRegistry
from .observability import get_logger
from .prompting import build_messages
from .vector_store import (
    ChromaVectorIndex,
    KnowledgeChunk,
    SearchHit,
    SearchResult,
    TenantKey,
    VectorStore,
)

logger = get_logger(__name__)

UNGROUNDED_NOTICE = (
    "I couldn't find anything about this in your documents, "
    "so this is a general best-effort answer:"
)
NO_CONTEXT_FALLBACK = (
    "I'm sorry, I couldn't find relevant information in your documents and the "
    "language model is unavailable right now. Please try again later."
)
EXCERPT_FALLBACK_PREFIX = "I couldn't generate a full answer right now. Here is the most relevant passage"


# ---------------------------------------------------------------------------
# Result and event types
# ---------------------------------------------------------------------------

class QueryState(str, Enum):
    VALIDATING = "validating"
    EMBEDDING = "embedding"
    RETRIEVING = "retrieving"
    PROMPTING = "prompting"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL_STATES = {QueryState.COMPLETED, QueryState.CANCELLED, QueryState.FAILED}


@dataclass(frozen=True)
class SourceRef:
    chunk_id: str
    title: str
    score: float | None
    excerpt: str
    category: str = ""
    source_name: str = ""

    @classmethod
    def from_hit(cls, hit: SearchHit, excerpt_chars: int = SOURCE_EXCERPT_CHARS) -> "SourceRef":
        chunk = hit.chunk
        return cls(
            chunk_id=str(chunk.id),
            title=chunk.title,
            score=None if hit.score is None else round(float(hit.score), 4),
            excerpt=chunk.excerpt(excerpt_chars),
            category=chunk.category,
            source_name=chunk.source_name,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QueryResult:
    answer: str
    sources: list[SourceRef]
    confidence: float
    grounded: bool
    success: bool
    state: QueryState
    tier: str | None = None
    session_key: str | None = None

    @property
    def total_sources(self) -> int:
        return len(self.sources)

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": [source.to_dict() for source in self.sources],
            "confidence": self.confidence,
            "total_sources": self.total_sources,
            "grounded": self.grounded,
            "success": self.success,
            "state": self.state.value,
            "tier": self.tier,
            "session_key": self.session_key,
        }


@dataclass
class IngestDocument:
    text: str
    title: str = ""
    category: str = ""
    tags: dict[str, bool] = field(default_factory=dict)
    source_name: str | None = None


@dataclass
class IngestReport:
    chunks_added: int = 0
    chunk_count: int = 0
    documents_added: int = 0
    skipped_duplicates: int = 0
    chunks_removed: int = 0
    chunk_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["success"] = self.success
        return payload


@dataclass(frozen=True)
class StreamEvent:
    event_type: ClassVar[str] = "event"
    terminal: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, (list, tuple)):
                payload[key] = [item.to_dict() if hasattr(item, "to_dict") else item for item in value]
        return payload


@dataclass(frozen=True)
class MetadataEvent(StreamEvent):
    event_type: ClassVar[str] = "metadata"
    sources: tuple[SourceRef, ...] = ()
    confidence: float = 0.0
    tier: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sources": [source.to_dict() for source in self.sources],
            "confidence": self.confidence,
            "tier": self.tier,
        }


@dataclass(frozen=True)
class ChunkEvent(StreamEvent):
    event_type: ClassVar[str] = "chunk"
    text: str = ""


@dataclass(frozen=True)
class CompleteEvent(StreamEvent):
    event_type: ClassVar[str] = "complete"
    terminal: ClassVar[bool] = True
    full_answer: str = ""
    sources: tuple[SourceRef, ...] = ()
    confidence: float = 0.0
    grounded: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "full_answer": self.full_answer,
            "sources": [source.to_dict() for source in self.sources],
            "confidence": self.confidence,
            "grounded": self.grounded,
        }


@dataclass(frozen=True)
class ErrorEvent(StreamEvent):
    event_type: ClassVar[str] = "error"
    terminal: ClassVar[bool] = True
    message: str = ""
    fallback_answer: str = ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def compute_confidence(
    hits: list[SearchHit],
    *,
    baseline: float = CONFIDENCE_BASELINE,
    text_fallback_score: float = TEXT_FALLBACK_SCORE,
) -> float:
    """Rank-weighted mean of hit scores (weight 1/rank), clamped to [0, 1].

    Keyword-tier hits carry no similarity, so they count as
    ``text_fallback_score``. No hits means exactly ``baseline``.
    """
    if not hits:
        return float(baseline)
    weighted = 0.0
    total_weight = 0.0
    for rank, hit in enumerate(hits, start=1):
        score = text_fallback_score if hit.score is None else float(hit.score)
        weight = 1.0 / rank
        weighted += weight * max(0.0, min(1.0, score))
        total_weight += weight
    return round(max(0.0, min(1.0, weighted / total_weight)), 4)


def fallback_answer(hits: list[SearchHit], excerpt_chars: int = FALLBACK_EXCERPT_CHARS) -> str:
    if not hits:
        return NO_CONTEXT_FALLBACK
    top = hits[0].chunk
    label = top.title or top.source_name or "your documents"
    return f'{EXCERPT_FALLBACK_PREFIX} from "{label}":\n\n{top.excerpt(excerpt_chars)}'


class _QueryTrace:
    """Tracks one query's state and logs every transition."""

    def __init__(self, tenant: TenantKey, session_key: str, mode: str):
        self.tenant = tenant
        self.session_key = session_key
        self.mode = mode
        self.state = QueryState.VALIDATING
        self.started_at = time.perf_counter()

    def _elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.started_at) * 1000.0, 2)

    def advance(self, state: QueryState):
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"query already finished in state {self.state.value}")
        self.state = state
        logger.info(
            "query_state",
            state=state.value,
            mode=self.mode,
            tenant=self.tenant.storage_key,
            elapsed_ms=self._elapsed_ms(),
        )

    def fail(self, exc: BaseException):
        failed_in = self.state
        self.state = QueryState.FAILED
        logger.warning(
            "query_failed",
            failed_in=failed_in.value,
            mode=self.mode,
            tenant=self.tenant.storage_key,
            error_type=type(exc).__name__,
            error=str(exc),
            elapsed_ms=self._elapsed_ms(),
        )

    def cancel(self):
        self.state = QueryState.CANCELLED
        logger.info(
            "stream_cancelled",
            tenant=self.tenant.storage_key,
            elapsed_ms=self._elapsed_ms(),
        )


@dataclass
class _PreparedQuery:
    question: str
    session_key: str
    hits: list[SearchHit]
    tier: str | None
    messages: list[BaseMessage]
    sources: list[SourceRef]
    confidence: float
    trace: _QueryTrace

    @property
    def grounded(self) -> bool:
        return bool(self.hits)

    def result(self, answer: str, *, success: bool) -> QueryResult:
        return QueryResult(
            answer=answer,
            sources=list(self.sources),
            confidence=self.confidence,
            grounded=self.grounded and success,
            success=success,
            state=self.trace.state,
            tier=self.tier,
            session_key=self.session_key,
        )


def _label_ungrounded(answer: str) -> str:
    return f"{UNGROUNDED_NOTICE}\n\n{answer.strip()}"


# ---------------------------------------------------------------------------
# Streaming channel
# ---------------------------------------------------------------------------

class QueryStream:
    """Async iterable of stream events backed by a producer task.

    The producer pushes events onto a bounded queue; leaving the iteration
    (or calling ``aclose``) cancels it, which closes the upstream model stream.
    """

    def __init__(self, orchestrator: "RetrievalOrchestrator", prepared: _PreparedQuery, queue_size: int):
        self._orchestrator = orchestrator
        self._prepared = prepared
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self._task: asyncio.Task | None = None
        self.metadata = MetadataEvent(
            sources=tuple(prepared.sources),
            confidence=prepared.confidence,
            tier=prepared.tier,
        )
        self.result: QueryResult | None = None

    @property
    def state(self) -> QueryState:
        return self._prepared.trace.state

    @property
    def session_key(self) -> str:
        return self._prepared.session_key

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._events()

    async def __aenter__(self) -> "QueryStream":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    async def _events(self) -> AsyncIterator[StreamEvent]:
        if self._task is not None:
            raise RuntimeError("a query stream can only be consumed once")
        self._task = asyncio.create_task(self._produce())
        try:
            while True:
                event = await self._queue.get()
                yield event
                if event.terminal:
                    return
        finally:
            await self.aclose()

    async def aclose(self):
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})

    async def _produce(self):
        prepared = self._prepared
        trace = prepared.trace
        llm = self._orchestrator.llm
        await self._queue.put(self.metadata)
        trace.advance(QueryState.GENERATING)

        pieces: list[str] = []
        try:
            if not prepared.grounded:
                notice = f"{UNGROUNDED_NOTICE}\n\n"
                await self._queue.put(ChunkEvent(text=notice))
            tokens = llm.stream(prepared.messages)
            try:
                async for text in tokens:
                    pieces.append(text)
                    await self._queue.put(ChunkEvent(text=text))
            finally:
                await tokens.aclose()
            answer = strip_reasoning("".join(pieces))
            if not answer:
                raise GenerationFailed("Language model returned an empty answer")
            if not prepared.grounded:
                answer = _label_ungrounded(answer)
            await self._orchestrator.memory.record_exchange(prepared.session_key, prepared.question, answer)
        except asyncio.CancelledError:
            trace.cancel()
            self.result = prepared.result(strip_reasoning("".join(pieces)), success=False)
            raise
        except Exception as exc:
            if not isinstance(exc, GenerationFailed):
                logger.error("stream_producer_error", error_type=type(exc).__name__, error=str(exc))
            trace.fail(exc)
            fallback = fallback_answer(prepared.hits)
            self.result = prepared.result(fallback, success=False)
            message = exc.message if isinstance(exc, RAGError) else "Answer generation failed"
            await self._queue.put(ErrorEvent(message=message, fallback_answer=fallback))
            return

        trace.advance(QueryState.COMPLETED)
        self.result = prepared.result(answer, success=True)
        await self._queue.put(
            CompleteEvent(
                full_answer=answer,
                sources=tuple(prepared.sources),
                confidence=prepared.confidence,
                grounded=prepared.grounded,
            )
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class RetrievalOrchestrator:
    """Top-level ingest/query contract over the store, embedder, model and memory."""

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingClient,
        llm: LLMClient,
        *,
        memory: MemoryRegistry | None = None,
        chunker: ChunkingPipeline | None = None,
        score_threshold: float = QUERY_SCORE_THRESHOLD,
        dedup_threshold: float = DEDUP_SCORE_THRESHOLD,
        confidence_baseline: float = CONFIDENCE_BASELINE,
        default_k: int = DEFAULT_TOP_K,
        ingest_concurrency: int = INGEST_MAX_CONCURRENCY,
        stream_queue_size: int = STREAM_QUEUE_SIZE,
        executor: Executor | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.llm = llm
        self.memory = memory or MemoryRegistry()
        self.chunker = chunker or ChunkingPipeline()
        self.score_threshold = float(score_threshold)
        self.dedup_threshold = float(dedup_threshold)
        self.confidence_baseline = float(confidence_baseline)
        self.default_k = int(default_k)
        self.ingest_concurrency = max(1, int(ingest_concurrency))
        self.stream_queue_size = int(stream_queue_size)
        self._executor = executor

    async def _run_store(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    # --- ingestion -------------------------------------------------------

    @staticmethod
    def _coerce_document(document: Any) -> IngestDocument:
        if isinstance(document, IngestDocument):
            return document
        if isinstance(document, str):
            return IngestDocument(text=document)
        if isinstance(document, dict):
            return IngestDocument(
                text=document.get("text", ""),
                title=document.get("title") or "",
                category=document.get("category") or "",
                tags=dict(document.get("tags") or {}),
                source_name=document.get("source_name"),
            )
        raise InvalidInput(f"Unsupported document type: {type(document).__name__}")

    def _error_entry(self, tenant: TenantKey, index: int, doc: IngestDocument, exc: BaseException) -> dict[str, Any]:
        logger.warning(
            "ingest_document_failed",
            tenant=tenant.storage_key,
            index=index,
            title=doc.title,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        error = exc.message if isinstance(exc, RAGError) else str(exc)
        return {"index": index, "title": doc.title, "error": error, "type": type(exc).__name__}

    async def _gather_documents(self, docs: list[IngestDocument], work) -> list[Any]:
        semaphore = asyncio.Semaphore(self.ingest_concurrency)

        async def _guarded(document: IngestDocument):
            async with semaphore:
                return await work(document)

        outcomes = await asyncio.gather(*(_guarded(doc) for doc in docs), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
        return outcomes

    async def ingest(
        self,
        tenant: TenantKey,
        documents: Iterable[Any],
        *,
        skip_duplicates: bool = False,
    ) -> IngestReport:
        """Chunks, embeds and stores each document; one failed document never aborts its siblings."""
        docs = [self._coerce_document(document) for document in documents]
        if not docs:
            raise InvalidInput("No documents to ingest")

        outcomes = await self._gather_documents(
            docs, lambda doc: self._ingest_one(tenant, doc, skip_duplicates)
        )

        report = IngestReport()
        for index, (doc, outcome) in enumerate(zip(docs, outcomes)):
            if isinstance(outcome, BaseException):
                report.errors.append(self._error_entry(tenant, index, doc, outcome))
                continue
            chunk_ids, chunk_count, skipped = outcome
            report.chunk_ids.extend(chunk_ids)
            report.chunks_added += len(chunk_ids)
            report.chunk_count += chunk_count
            report.skipped_duplicates += skipped
            report.documents_added += 1

        logger.info(
            "ingest_completed",
            tenant=tenant.storage_key,
            documents=len(docs),
            documents_added=report.documents_added,
            chunks_added=report.chunks_added,
            errors=len(report.errors),
        )
        return report

    async def reindex(self, tenant: TenantKey, documents: Iterable[Any]) -> IngestReport:
        """Replaces the tenant's whole content with ``documents``.

        Every document is chunked and embedded first; the old chunks are swapped
        for the new ones in a single store transaction. If any document fails
        nothing is replaced and the report lists the failures.
        """
        docs = [self._coerce_document(document) for document in documents]
        if not docs:
            raise InvalidInput("No documents to reindex")

        outcomes = await self._gather_documents(docs, lambda doc: self._prepare_chunks(tenant, doc))

        report = IngestReport()
        prepared: list[KnowledgeChunk] = []
        for index, (doc, outcome) in enumerate(zip(docs, outcomes)):
            if isinstance(outcome, BaseException):
                report.errors.append(self._error_entry(tenant, index, doc, outcome))
                continue
            prepared.extend(outcome)
            report.chunk_count += len(outcome)
        if report.errors:
            logger.warning("reindex_aborted", tenant=tenant.storage_key, errors=len(report.errors))
            return report

        removed, chunk_ids = await self._run_store(self.store.replace_tenant, tenant, prepared)
        report.chunks_removed = removed
        report.chunk_ids = chunk_ids
        report.chunks_added = len(chunk_ids)
        report.documents_added = len(docs)
        logger.info(
            "reindex_completed",
            tenant=tenant.storage_key,
            documents=len(docs),
            chunks_removed=removed,
            chunks_added=report.chunks_added,
        )
        return report

    async def _prepare_chunks(self, tenant: TenantKey, document: IngestDocument) -> list[KnowledgeChunk]:
        if not isinstance(document.text, str) or not document.text.strip():
            raise InvalidInput("Document text must not be empty")
        pieces = self.chunker.split(document.text)
        if not pieces:
            raise InvalidInput("Document produced no chunks")

        # One batch per document: if embedding fails nothing from it is stored.
        vectors = await self.embedder.embed_batch(pieces)
        source_name = document.source_name or document.title or "manual"
        return [
            KnowledgeChunk(
                text=piece,
                tenant=tenant,
                vector=vector,
                title=document.title,
                category=document.category,
                tags=dict(document.tags),
                source_name=source_name,
            )
            for piece, vector in zip(pieces, vectors)
        ]

    async def _ingest_one(
        self,
        tenant: TenantKey,
        document: IngestDocument,
        skip_duplicates: bool,
    ) -> tuple[list[str], int, int]:
        chunks = await self._prepare_chunks(tenant, document)
        chunk_count = len(chunks)

        skipped = 0
        if skip_duplicates:
            kept = []
            for chunk in chunks:
                duplicate = await self._run_store(
                    self.store.find_near_duplicate, tenant, chunk.vector, self.dedup_threshold
                )
                if duplicate is not None:
                    skipped += 1
                    logger.info(
                        "ingest_duplicate_skipped",
                        tenant=tenant.storage_key,
                        duplicate_of=duplicate.chunk.id,
                        score=duplicate.score,
                    )
                    continue
                kept.append(chunk)
            chunks = kept

        chunk_ids = await self._run_store(self.store.add_many, chunks) if chunks else []
        return chunk_ids, chunk_count, skipped

    # --- query -----------------------------------------------------------

    @staticmethod
    def _validate_question(question: Any) -> str:
        if not isinstance(question, str) or not question.strip():
            raise InvalidInput("Question must be a non-empty string")
        return question.strip()

    async def _retrieve(
        self,
        tenant: TenantKey,
        question: str,
        *,
        k: int | None,
        score_threshold: float | None,
        source_filter: str | None,
    ) -> SearchResult:
        vector = await self.embedder.embed(question)
        return await self._run_store(
            self.store.search,
            tenant,
            vector,
            self.default_k if k is None else k,
            self.score_threshold if score_threshold is None else score_threshold,
            query_text=question,
            source_filter=source_filter,
        )

    async def _prepare(
        self,
        tenant: TenantKey,
        question: Any,
        *,
        mode: str,
        k: int | None,
        score_threshold: float | None,
        include_memory: bool,
        session_key: str | None,
        source_filter: str | None,
    ) -> _PreparedQuery:
        trace = _QueryTrace(tenant, session_key or tenant.storage_key, mode)
        try:
            text = self._validate_question(question)
            trace.advance(QueryState.EMBEDDING)
            vector = await self.embedder.embed(text)

            trace.advance(QueryState.RETRIEVING)
            search = await self._run_store(
                self.store.search,
                tenant,
                vector,
                self.default_k if k is None else k,
                self.score_threshold if score_threshold is None else score_threshold,
                query_text=text,
                source_filter=source_filter,
            )

            trace.advance(QueryState.PROMPTING)
            session = trace.session_key
            memory_turns = self.memory.context_turns_for(session) if include_memory else []
            messages = build_messages(text, search.hits, memory_turns)
        except BaseException as exc:
            trace.fail(exc)
            raise

        return _PreparedQuery(
            question=text,
            session_key=trace.session_key,
            hits=search.hits,
            tier=search.tier.value if search.tier else None,
            messages=messages,
            sources=[SourceRef.from_hit(hit) for hit in search.hits],
            confidence=compute_confidence(search.hits, baseline=self.confidence_baseline),
            trace=trace,
        )

    async def query(
        self,
        tenant: TenantKey,
        question: str,
        *,
        k: int | None = None,
        score_threshold: float | None = None,
        include_memory: bool = True,
        session_key: str | None = None,
        source_filter: str | None = None,
    ) -> QueryResult:
        """Answers ``question`` from ``tenant``'s chunks and waits for the full completion.

        Generation failures come back as a labelled fallback answer with
        ``success=False``; validation, embedding and store errors raise.
        """
        prepared = await self._prepare(
            tenant,
            question,
            mode="complete",
            k=k,
            score_threshold=score_threshold,
            include_memory=include_memory,
            session_key=session_key,
            source_filter=source_filter,
        )
        trace = prepared.trace
        trace.advance(QueryState.GENERATING)
        try:
            answer = await self.llm.complete(prepared.messages)
        except GenerationFailed as exc:
            trace.fail(exc)
            return prepared.result(fallback_answer(prepared.hits), success=False)
        except BaseException as exc:
            trace.fail(exc)
            raise

        if not prepared.grounded:
            answer = _label_ungrounded(answer)
        await self.memory.record_exchange(prepared.session_key, prepared.question, answer)
        trace.advance(QueryState.COMPLETED)
        return prepared.result(answer, success=True)

    async def stream_query(
        self,
        tenant: TenantKey,
        question: str,
        *,
        k: int | None = None,
        score_threshold: float | None = None,
        include_memory: bool = True,
        session_key: str | None = None,
        source_filter: str | None = None,
    ) -> QueryStream:
        """Retrieves eagerly, then returns a stream of metadata, chunk and terminal events.

        Errors before generation raise here, so transports can still answer
        with a plain error status before the first event is sent.
        """
        prepared = await self._prepare(
            tenant,
            question,
            mode="stream",
            k=k,
            score_threshold=score_threshold,
            include_memory=include_memory,
            session_key=session_key,
            source_filter=source_filter,
        )
        return QueryStream(self, prepared, self.stream_queue_size)

    async def search_documents(
        self,
        tenant: TenantKey,
        query: str,
        *,
        k: int | None = None,
        score_threshold: float | None = None,
        source_filter: str | None = None,
    ) -> dict[str, Any]:
        """Retrieval without generation."""
        text = self._validate_question(query)
        search = await self._retrieve(
            tenant,
            text,
            k=k,
            score_threshold=score_threshold,
            source_filter=source_filter,
        )
        results = []
        for hit in search.hits:
            item = SourceRef.from_hit(hit).to_dict()
            item["text"] = hit.chunk.text
            results.append(item)
        return {
            "results": results,
            "total_results": len(results),
            "tier": search.tier.value if search.tier else None,
        }

    # --- administration --------------------------------------------------

    async def _owned_chunk(self, chunk_id: str, tenant: TenantKey | None) -> KnowledgeChunk | None:
        chunk = await self._run_store(self.store.get, chunk_id)
        if chunk is None:
            return None
        if tenant is not None and chunk.tenant.storage_key != tenant.storage_key:
            return None
        return chunk

    async def update_chunk(
        self,
        chunk_id: str,
        *,
        tenant: TenantKey | None = None,
        title: str | None = None,
        category: str | None = None,
        tags: Any = None,
    ) -> KnowledgeChunk | None:
        if await self._owned_chunk(chunk_id, tenant) is None:
            return None
        return await self._run_store(
            self.store.update_metadata,
            chunk_id,
            title=title,
            category=category,
            tags=tags,
        )

    async def delete_chunk(self, chunk_id: str, *, tenant: TenantKey | None = None) -> bool:
        if await self._owned_chunk(chunk_id, tenant) is None:
            return False
        return await self._run_store(self.store.delete_by_id, chunk_id)

    async def delete_tenant(self, tenant: TenantKey) -> int:
        return await self._run_store(self.store.delete_by_tenant, tenant)

    async def delete_source(self, tenant: TenantKey, source_name: str) -> int:
        """Drops every chunk that one source document contributed to ``tenant``."""
        return await self._run_store(self.store.delete_by_source, tenant, source_name)

    async def tenant_stats(self, tenant: TenantKey) -> dict[str, Any]:
        return await self._run_store(self.store.stats, tenant)

    def memory_turns(self, session_key: str) -> list[dict[str, Any]]:
        return [turn.to_dict() for turn in self.memory.turns(session_key)]

    def clear_memory(self, session_key: str) -> bool:
        return self.memory.clear(session_key)

    def close(self):
        self.store.close()


def build_orchestrator(
    db_path=None,
    *,
    native_search: bool = NATIVE_VECTOR_SEARCH,
    executor: Executor | None = None,
) -> RetrievalOrchestrator:
    """Opens the shared store and wires the default embedding and language models."""
    native_index = ChromaVectorIndex(CHROMA_DIR, CHROMA_COLLECTION) if native_search else None
    store = VectorStore(db_path or DB_PATH, native_index=native_index).open()
    return RetrievalOrchestrator(
        store,
        EmbeddingClient(),
        LLMClient(),
        executor=executor,
    )
