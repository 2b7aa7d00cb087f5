# /notebookrag/vector_store.py
"""
Persistent chunk store with tenant-scoped similarity search.

SQLite is the system of record: every chunk row carries its tenant key, its
metadata and its embedding (float64 blob). An optional Chroma collection acts
as the native vector index. Search walks an explicit, ordered strategy list:

    NativeVectorSearch -> ManualCosineScan -> TextFallback

The first tier that produces an answer wins. The native tier falls through
when the index is missing, stale or returns nothing; the manual scan is always
available and its answer is final; the keyword tier only runs when an earlier
tier raised.
"""
from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Sequence

import numpy as np

from .config import (
    CHROMA_COLLECTION,
    CHROMA_DIR,
    DB_PATH,
    DEDUP_SCORE_THRESHOLD,
    DEFAULT_TOP_K,
    QUERY_SCORE_THRESHOLD,
)
from .db_migrations import SqliteMigration, apply_sqlite_migrations, utcnow_iso
from .embedding_client import cosine_similarity
from .errors import (
    DimensionMismatchError,
    InvalidInput,
    RetrievalDegraded,
    TenantIsolationViolation,
)
from .observability import get_logger
from .tokenization import tokenize_for_matching, unique_tokens

logger = get_logger(__name__)

GLOBAL_TENANT_KEY = "global"
_TENANT_KEY_SEPARATOR = ":"
_NATIVE_SYNC_BATCH = 256
_TEXT_QUERY_TOKEN_LIMIT = 12


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TenantKey:
    """Ownership boundary: the global knowledge base or one user's notebook."""

    notebook_id: str | None = None
    user_id: str | None = None

    def __post_init__(self):
        notebook_id = (self.notebook_id or "").strip() or None
        user_id = (self.user_id or "").strip() or None
        if (notebook_id is None) != (user_id is None):
            raise InvalidInput("A notebook tenant needs both notebook_id and user_id")
        # ':' separates the parts of the storage key.
        for name, value in (("notebook_id", notebook_id), ("user_id", user_id)):
            if value is not None and _TENANT_KEY_SEPARATOR in value:
                raise InvalidInput(f"{name} must not contain {_TENANT_KEY_SEPARATOR!r}")
        object.__setattr__(self, "notebook_id", notebook_id)
        object.__setattr__(self, "user_id", user_id)

    @classmethod
    def global_scope(cls) -> "TenantKey":
        return cls()

    @classmethod
    def notebook(cls, notebook_id: str, user_id: str) -> "TenantKey":
        if not str(notebook_id or "").strip() or not str(user_id or "").strip():
            raise InvalidInput("A notebook tenant needs both notebook_id and user_id")
        return cls(notebook_id=str(notebook_id), user_id=str(user_id))

    @classmethod
    def from_storage_key(cls, key: str) -> "TenantKey":
        if key == GLOBAL_TENANT_KEY:
            return cls()
        parts = str(key).split(_TENANT_KEY_SEPARATOR)
        if len(parts) != 3 or parts[0] != "notebook" or not parts[1] or not parts[2]:
            raise ValueError(f"Unrecognised tenant key: {key!r}")
        _, user_id, notebook_id = parts
        return cls(notebook_id=notebook_id, user_id=user_id)

    @property
    def is_global(self) -> bool:
        return self.notebook_id is None

    @property
    def storage_key(self) -> str:
        if self.is_global:
            return GLOBAL_TENANT_KEY
        return f"notebook:{self.user_id}:{self.notebook_id}"

    def __str__(self) -> str:
        return self.storage_key


@dataclass
class KnowledgeChunk:
    text: str
    tenant: TenantKey
    vector: list[float]
    title: str = ""
    category: str = ""
    tags: dict[str, bool] = field(default_factory=dict)
    source_name: str = "manual"
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def excerpt(self, max_chars: int) -> str:
        text = self.text.strip()
        if len(text) <= max_chars:
            return text
        return text[:max_chars] + "..."


class SearchTier(str, Enum):
    NATIVE = "native_vector"
    MANUAL = "manual_cosine"
    TEXT = "text_fallback"


@dataclass(frozen=True)
class SearchHit:
    chunk: KnowledgeChunk
    score: float | None
    tier: SearchTier


@dataclass(frozen=True)
class SearchResult:
    hits: list[SearchHit]
    tier: SearchTier | None
    degraded: bool = False


@dataclass(frozen=True)
class SearchRequest:
    tenant: TenantKey
    vector: tuple[float, ...]
    k: int
    score_threshold: float
    query_text: str | None = None
    source_filter: str | None = None


# ---------------------------------------------------------------------------
# Native vector index (Chroma)
# ---------------------------------------------------------------------------

class ChromaVectorIndex:
    """Chroma collection mirroring the SQLite chunk table, cosine space."""

    def __init__(
        self,
        persist_dir: str | Path | None = CHROMA_DIR,
        collection_name: str = CHROMA_COLLECTION,
        client: Any = None,
    ):
        self.persist_dir = Path(persist_dir) if persist_dir else None
        self.collection_name = collection_name
        self._client = client
        self._collection = None

    def open(self):
        import chromadb

        if self._client is None:
            if self.persist_dir is None:
                self._client = chromadb.EphemeralClient()
            else:
                self.persist_dir.mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=str(self.persist_dir))
        self._collection = self._create_collection()

    def _create_collection(self):
        return self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    def _require(self):
        if self._collection is None:
            raise RetrievalDegraded("native vector index is not open")
        return self._collection

    def close(self):
        self._collection = None
        self._client = None

    def count(self) -> int:
        return int(self._require().count())

    def reset(self):
        collection = self._require()
        self._client.delete_collection(name=collection.name)
        self._collection = self._create_collection()

    def upsert(self, chunks: Sequence[KnowledgeChunk]):
        if not chunks:
            return
        self._require().upsert(
            ids=[str(chunk.id) for chunk in chunks],
            embeddings=[list(chunk.vector) for chunk in chunks],
            metadatas=[
                {"tenant_key": chunk.tenant.storage_key, "source_name": chunk.source_name or ""}
                for chunk in chunks
            ],
        )

    def delete_ids(self, ids: Sequence[str]):
        if ids:
            self._require().delete(ids=list(ids))

    def delete_tenant(self, tenant_key: str):
        self._require().delete(where={"tenant_key": tenant_key})

    def query(
        self,
        tenant_key: str,
        vector: Sequence[float],
        k: int,
        source_filter: str | None = None,
    ) -> list[tuple[str, float]]:
        """(chunk_id, cosine similarity) pairs; the tenant filter is applied inside the index."""
        collection = self._require()
        where: dict[str, Any] = {"tenant_key": tenant_key}
        if source_filter:
            where = {"$and": [{"tenant_key": tenant_key}, {"source_name": source_filter}]}
        try:
            result = collection.query(
                query_embeddings=[list(vector)],
                n_results=max(1, int(k)),
                where=where,
                include=["distances"],
            )
        except Exception as exc:
            raise RetrievalDegraded("native vector query failed", detail=str(exc)) from exc
        ids = (result.get("ids") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]
        return [(str(chunk_id), 1.0 - float(distance)) for chunk_id, distance in zip(ids, distances)]


# ---------------------------------------------------------------------------
# Search strategies
# ---------------------------------------------------------------------------

class SearchStrategy:
    tier: SearchTier
    runs_only_after_failure = False

    def run(self, store: "VectorStore", request: SearchRequest) -> list[SearchHit] | None:
        """Hits for ``request``; ``None`` hands over to the next tier."""
        raise NotImplementedError


class NativeVectorSearch(SearchStrategy):
    tier = SearchTier.NATIVE

    def run(self, store, request):
        index = store.native_index
        if index is None or not store.native_ready:
            raise RetrievalDegraded("native vector index unavailable")
        matches = index.query(
            request.tenant.storage_key,
            request.vector,
            request.k,
            source_filter=request.source_filter,
        )
        if not matches:
            return None

        scores = dict(matches)
        rows = store._fetch_rows_by_ids(list(scores))
        ranked = []
        for row in rows:
            score = max(-1.0, min(1.0, scores[row["chunk_id"]]))
            if score < request.score_threshold:
                continue
            ranked.append((score, int(row["seq"]), row))
        if not ranked:
            return None
        ranked.sort(key=lambda item: (-item[0], item[1]))
        return [
            SearchHit(chunk=store._row_to_chunk(row), score=score, tier=self.tier)
            for score, _, row in ranked[: request.k]
        ]


class ManualCosineScan(SearchStrategy):
    """Full scan of the tenant's chunks; the guaranteed-available tier."""

    tier = SearchTier.MANUAL

    def run(self, store, request):
        scored = []
        for row in store._tenant_rows(request.tenant, source_filter=request.source_filter):
            score = cosine_similarity(request.vector, _blob_to_vector(row["vector"]))
            if score >= request.score_threshold:
                scored.append((score, row))
        # list.sort is stable: equal scores keep insertion (seq) order.
        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            SearchHit(chunk=store._row_to_chunk(row), score=score, tier=self.tier)
            for score, row in scored[: request.k]
        ]


class TextFallback(SearchStrategy):
    tier = SearchTier.TEXT
    runs_only_after_failure = True

    def run(self, store, request):
        if not request.query_text:
            raise RetrievalDegraded("keyword fallback needs the query text")
        chunks = store.text_search(
            request.tenant,
            request.query_text,
            request.k,
            source_filter=request.source_filter,
        )
        return [SearchHit(chunk=chunk, score=None, tier=self.tier) for chunk in chunks]


DEFAULT_SEARCH_STRATEGIES: tuple[SearchStrategy, ...] = (
    NativeVectorSearch(),
    ManualCosineScan(),
    TextFallback(),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vector_to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float64).tobytes()


def _blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float64)


def _json_loads_or_default(raw: str | None, default: Any):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return default


def _normalize_tags(tags: Any) -> dict[str, bool]:
    if not tags:
        return {}
    if isinstance(tags, dict):
        return {str(label): bool(present) for label, present in tags.items()}
    return {str(label): True for label in tags}


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class VectorStore:
    """Process-wide chunk store shared by all tenants.

    Writes are serialized on one connection; every read and delete is keyed on
    the tenant so two notebooks can share the physical store safely.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        native_index: ChromaVectorIndex | None = None,
        strategies: Iterable[SearchStrategy] | None = None,
    ):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.native_index = native_index
        self.strategies: tuple[SearchStrategy, ...] = tuple(strategies or DEFAULT_SEARCH_STRATEGIES)
        self.native_ready = False
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._fts5_enabled = False

    # --- lifecycle -------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def open(self) -> "VectorStore":
        with self._lock:
            if self._conn is not None:
                return self
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = self._connect()
            try:
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA synchronous=NORMAL")
            except sqlite3.Error:
                pass
            self._ensure_schema()
            self._open_native_index()
        logger.info(
            "vector_store_opened",
            db_path=str(self.db_path),
            fts5=self._fts5_enabled,
            native_index=self.native_ready,
        )
        return self

    def close(self):
        with self._lock:
            if self.native_index is not None:
                self.native_index.close()
            self.native_ready = False
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "VectorStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("vector store is not open")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_chunks_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS chunks (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        chunk_id TEXT NOT NULL UNIQUE,
                        tenant_key TEXT NOT NULL,
                        text TEXT NOT NULL,
                        title TEXT NOT NULL DEFAULT '',
                        category TEXT NOT NULL DEFAULT '',
                        tags_json TEXT NOT NULL DEFAULT '{}',
                        vector BLOB NOT NULL,
                        dimension INTEGER NOT NULL,
                        source_name TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_chunks_tenant ON chunks(tenant_key, seq)",
                    "CREATE INDEX IF NOT EXISTS idx_chunks_tenant_source ON chunks(tenant_key, source_name)",
                ),
            ),
            SqliteMigration(
                version=2,
                name="create_store_meta_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS store_meta (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                    """,
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="vector_store", migrations=migrations)
            self._ensure_fts_index(conn)

    def _ensure_fts_index(self, conn: sqlite3.Connection):
        try:
            conn.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                    tenant_key UNINDEXED,
                    title,
                    text
                )
                """
            )
            conn.execute(
                """
                INSERT INTO chunks_fts(rowid, tenant_key, title, text)
                SELECT chunks.seq, chunks.tenant_key, chunks.title, chunks.text
                FROM chunks
                LEFT JOIN chunks_fts ON chunks_fts.rowid = chunks.seq
                WHERE chunks_fts.rowid IS NULL
                """
            )
            self._fts5_enabled = True
        except sqlite3.Error as exc:
            self._fts5_enabled = False
            logger.warning("vector_store_fts_unavailable", error=str(exc))

    def _open_native_index(self):
        if self.native_index is None:
            return
        try:
            self.native_index.open()
            self.native_ready = True
            total = self.count()
            if self.native_index.count() != total:
                self.rebuild_native_index()
        except Exception as exc:
            self.native_ready = False
            logger.warning(
                "retrieval_tier_degraded",
                tier=SearchTier.NATIVE.value,
                reason="native index failed to open",
                error=str(exc),
            )

    def _mark_native_stale(self, operation: str, exc: Exception):
        # A partially written index would rank an incomplete set; stop using it.
        self.native_ready = False
        logger.warning(
            "retrieval_tier_degraded",
            tier=SearchTier.NATIVE.value,
            reason=f"native index {operation} failed",
            error=str(exc),
        )

    def rebuild_native_index(self) -> int:
        """Re-mirrors every stored chunk into the native index."""
        if self.native_index is None:
            return 0
        self.native_index.reset()
        synced = 0
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM chunks ORDER BY seq").fetchall()
        for start in range(0, len(rows), _NATIVE_SYNC_BATCH):
            batch = [self._row_to_chunk(row) for row in rows[start:start + _NATIVE_SYNC_BATCH]]
            self.native_index.upsert(batch)
            synced += len(batch)
        self.native_ready = True
        logger.info("native_index_rebuilt", chunks=synced)
        return synced

    # --- row helpers -----------------------------------------------------

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> KnowledgeChunk:
        return KnowledgeChunk(
            id=row["chunk_id"],
            tenant=TenantKey.from_storage_key(row["tenant_key"]),
            text=row["text"],
            title=row["title"],
            category=row["category"],
            tags=_normalize_tags(_json_loads_or_default(row["tags_json"], {})),
            vector=_blob_to_vector(row["vector"]).tolist(),
            source_name=row["source_name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _tenant_rows(self, tenant: TenantKey, *, source_filter: str | None = None) -> list[sqlite3.Row]:
        sql = "SELECT * FROM chunks WHERE tenant_key = ?"
        params: list[Any] = [tenant.storage_key]
        if source_filter:
            sql += " AND source_name = ?"
            params.append(source_filter)
        sql += " ORDER BY seq"
        with self._connection() as conn:
            return conn.execute(sql, params).fetchall()

    def _fetch_rows_by_ids(self, chunk_ids: list[str]) -> list[sqlite3.Row]:
        if not chunk_ids:
            return []
        placeholders = ",".join("?" for _ in chunk_ids)
        with self._connection() as conn:
            return conn.execute(
                f"SELECT * FROM chunks WHERE chunk_id IN ({placeholders}) ORDER BY seq",
                chunk_ids,
            ).fetchall()

    def _stored_dimension(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute("SELECT value FROM store_meta WHERE key = 'dimension'").fetchone()
        return int(row["value"]) if row else None

    @property
    def dimension(self) -> int | None:
        with self._connection() as conn:
            return self._stored_dimension(conn)

    # --- writes ----------------------------------------------------------

    def add(self, chunk: KnowledgeChunk) -> str:
        return self.add_many([chunk])[0]

    def add_many(self, chunks: Sequence[KnowledgeChunk]) -> list[str]:
        """Stores all chunks in one transaction; either every chunk lands or none does."""
        if not chunks:
            return []
        batch_dim = self._validate_batch(chunks)
        with self._connection() as conn:
            stored = self._insert_chunks(conn, chunks, batch_dim)
        self._sync_native(upserted=stored)
        return [chunk.id for chunk in stored]

    def replace_tenant(self, tenant: TenantKey, chunks: Sequence[KnowledgeChunk]) -> tuple[int, list[str]]:
        """Swaps every chunk of ``tenant`` for ``chunks`` in one transaction.

        Returns (removed count, new chunk ids). A rejected batch leaves the old
        chunks in place.
        """
        for chunk in chunks:
            if chunk.tenant.storage_key != tenant.storage_key:
                raise InvalidInput("Every replacement chunk must belong to the tenant being replaced")
        batch_dim = self._validate_batch(chunks) if chunks else None
        with self._connection() as conn:
            removed = self._delete_tenant_rows(conn, tenant)
            stored = self._insert_chunks(conn, chunks, batch_dim) if chunks else []
        self._sync_native(deleted_tenant=tenant.storage_key, upserted=stored)
        logger.info(
            "tenant_chunks_replaced",
            tenant=tenant.storage_key,
            removed=removed,
            added=len(stored),
        )
        return removed, [chunk.id for chunk in stored]

    @staticmethod
    def _validate_batch(chunks: Sequence[KnowledgeChunk]) -> int:
        batch_dim = None
        for chunk in chunks:
            if not str(chunk.text or "").strip():
                raise InvalidInput("Chunk text must not be empty")
            if not chunk.vector:
                raise InvalidInput("Chunk vector must not be empty")
            if batch_dim is None:
                batch_dim = len(chunk.vector)
            elif len(chunk.vector) != batch_dim:
                raise DimensionMismatchError(batch_dim, len(chunk.vector))
        return batch_dim

    def _insert_chunks(
        self,
        conn: sqlite3.Connection,
        chunks: Sequence[KnowledgeChunk],
        batch_dim: int,
    ) -> list[KnowledgeChunk]:
        stored_dim = self._stored_dimension(conn)
        if stored_dim is None:
            conn.execute(
                "INSERT INTO store_meta (key, value) VALUES ('dimension', ?)",
                (str(batch_dim),),
            )
        elif stored_dim != batch_dim:
            raise DimensionMismatchError(stored_dim, batch_dim)

        now = utcnow_iso()
        stored: list[KnowledgeChunk] = []
        for chunk in chunks:
            chunk_id = uuid.uuid4().hex
            tags = _normalize_tags(chunk.tags)
            cursor = conn.execute(
                """
                INSERT INTO chunks (
                    chunk_id, tenant_key, text, title, category, tags_json, vector, dimension, source_name, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chunk_id,
                    chunk.tenant.storage_key,
                    chunk.text,
                    chunk.title or "",
                    chunk.category or "",
                    json.dumps(tags, ensure_ascii=True, sort_keys=True),
                    _vector_to_blob(chunk.vector),
                    batch_dim,
                    chunk.source_name or "",
                    now,
                    now,
                ),
            )
            if self._fts5_enabled:
                self._fts_insert(conn, cursor.lastrowid, chunk.tenant.storage_key, chunk.title, chunk.text)
            stored.append(
                KnowledgeChunk(
                    id=chunk_id,
                    tenant=chunk.tenant,
                    text=chunk.text,
                    title=chunk.title or "",
                    category=chunk.category or "",
                    tags=tags,
                    vector=[float(x) for x in chunk.vector],
                    source_name=chunk.source_name or "",
                    created_at=now,
                    updated_at=now,
                )
            )
        return stored

    def _sync_native(
        self,
        *,
        deleted_tenant: str | None = None,
        deleted_ids: Sequence[str] = (),
        upserted: Sequence[KnowledgeChunk] = (),
    ):
        """Mirrors a committed SQLite write into the native index."""
        if not self.native_ready:
            return
        operation = "delete"
        try:
            if deleted_tenant is not None:
                operation = "tenant delete"
                self.native_index.delete_tenant(deleted_tenant)
            if deleted_ids:
                operation = "delete"
                self.native_index.delete_ids(list(deleted_ids))
            if upserted:
                operation = "upsert"
                self.native_index.upsert(list(upserted))
        except Exception as exc:
            self._mark_native_stale(operation, exc)

    def _fts_insert(self, conn: sqlite3.Connection, seq: int, tenant_key: str, title: str, text: str):
        try:
            conn.execute(
                "INSERT OR REPLACE INTO chunks_fts(rowid, tenant_key, title, text) VALUES (?, ?, ?, ?)",
                (seq, tenant_key, title or "", text),
            )
        except sqlite3.Error as exc:
            self._fts5_enabled = False
            logger.warning("vector_store_fts_write_failed", error=str(exc))

    def update_metadata(
        self,
        chunk_id: str,
        *,
        title: str | None = None,
        category: str | None = None,
        tags: Any = None,
    ) -> KnowledgeChunk | None:
        """Administrative edit of title/category/tags; chunk text and vector stay immutable."""
        updates: dict[str, Any] = {}
        if title is not None:
            updates["title"] = str(title)
        if category is not None:
            updates["category"] = str(category)
        if tags is not None:
            updates["tags_json"] = json.dumps(_normalize_tags(tags), ensure_ascii=True, sort_keys=True)

        with self._connection() as conn:
            row = conn.execute("SELECT * FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
            if row is None:
                return None
            if updates:
                updates["updated_at"] = utcnow_iso()
                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(
                    f"UPDATE chunks SET {assignments} WHERE chunk_id = ?",
                    (*updates.values(), chunk_id),
                )
                if self._fts5_enabled and "title" in updates:
                    self._fts_insert(conn, row["seq"], row["tenant_key"], updates["title"], row["text"])
            row = conn.execute("SELECT * FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
        return self._row_to_chunk(row)

    def delete_by_id(self, chunk_id: str) -> bool:
        with self._connection() as conn:
            row = conn.execute("SELECT seq FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
            if row is None:
                return False
            if self._fts5_enabled:
                conn.execute("DELETE FROM chunks_fts WHERE rowid = ?", (row["seq"],))
            conn.execute("DELETE FROM chunks WHERE chunk_id = ?", (chunk_id,))
        self._sync_native(deleted_ids=[chunk_id])
        return True

    def _delete_tenant_rows(self, conn: sqlite3.Connection, tenant: TenantKey) -> int:
        if self._fts5_enabled:
            conn.execute(
                "DELETE FROM chunks_fts WHERE rowid IN (SELECT seq FROM chunks WHERE tenant_key = ?)",
                (tenant.storage_key,),
            )
        cursor = conn.execute("DELETE FROM chunks WHERE tenant_key = ?", (tenant.storage_key,))
        return int(cursor.rowcount or 0)

    def delete_by_tenant(self, tenant: TenantKey) -> int:
        """Atomically removes every chunk owned by ``tenant``; other tenants are untouched."""
        with self._connection() as conn:
            deleted = self._delete_tenant_rows(conn, tenant)
        self._sync_native(deleted_tenant=tenant.storage_key)
        logger.info("tenant_chunks_deleted", tenant=tenant.storage_key, deleted=deleted)
        return deleted

    def delete_by_source(self, tenant: TenantKey, source_name: str) -> int:
        """Removes one source document's chunks from ``tenant``."""
        if not str(source_name or "").strip():
            raise InvalidInput("source_name must not be empty")
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT seq, chunk_id FROM chunks WHERE tenant_key = ? AND source_name = ?",
                (tenant.storage_key, source_name),
            ).fetchall()
            if rows and self._fts5_enabled:
                conn.executemany("DELETE FROM chunks_fts WHERE rowid = ?", [(row["seq"],) for row in rows])
            conn.execute(
                "DELETE FROM chunks WHERE tenant_key = ? AND source_name = ?",
                (tenant.storage_key, source_name),
            )
        chunk_ids = [row["chunk_id"] for row in rows]
        self._sync_native(deleted_ids=chunk_ids)
        logger.info(
            "source_chunks_deleted",
            tenant=tenant.storage_key,
            source_name=source_name,
            deleted=len(chunk_ids),
        )
        return len(chunk_ids)

    # --- reads -----------------------------------------------------------

    def get(self, chunk_id: str) -> KnowledgeChunk | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
        return self._row_to_chunk(row) if row else None

    def count(self, tenant: TenantKey | None = None) -> int:
        with self._connection() as conn:
            if tenant is None:
                row = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM chunks WHERE tenant_key = ?",
                    (tenant.storage_key,),
                ).fetchone()
        return int(row[0] or 0)

    def stats(self, tenant: TenantKey) -> dict[str, Any]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT source_name, category, COUNT(*) AS n
                FROM chunks
                WHERE tenant_key = ?
                GROUP BY source_name, category
                """,
                (tenant.storage_key,),
            ).fetchall()
            dimension = self._stored_dimension(conn)
        sources: dict[str, int] = {}
        categories: dict[str, int] = {}
        for row in rows:
            sources[row["source_name"]] = sources.get(row["source_name"], 0) + int(row["n"])
            if row["category"]:
                categories[row["category"]] = categories.get(row["category"], 0) + int(row["n"])
        return {
            "tenant": tenant.storage_key,
            "total_chunks": sum(sources.values()),
            "sources": sources,
            "categories": categories,
            "dimension": dimension,
            "native_index": self.native_ready,
            "fts5": self._fts5_enabled,
        }

    def search(
        self,
        tenant: TenantKey,
        query_vector: Sequence[float],
        k: int = DEFAULT_TOP_K,
        score_threshold: float = QUERY_SCORE_THRESHOLD,
        *,
        query_text: str | None = None,
        source_filter: str | None = None,
    ) -> SearchResult:
        """Ranked chunks for ``tenant`` using the first search tier that answers."""
        if not query_vector:
            raise InvalidInput("Query vector must not be empty")
        limit = int(k)
        if limit < 1:
            raise InvalidInput("k must be at least 1")
        stored_dim = self.dimension
        if stored_dim is not None and stored_dim != len(query_vector):
            raise DimensionMismatchError(stored_dim, len(query_vector))

        request = SearchRequest(
            tenant=tenant,
            vector=tuple(float(x) for x in query_vector),
            k=limit,
            score_threshold=float(score_threshold),
            query_text=query_text,
            source_filter=source_filter,
        )
        failure: Exception | None = None
        for strategy in self.strategies:
            if strategy.runs_only_after_failure and failure is None:
                continue
            try:
                hits = strategy.run(self, request)
            except (DimensionMismatchError, TenantIsolationViolation, InvalidInput):
                raise
            except RetrievalDegraded as exc:
                logger.info(
                    "retrieval_tier_degraded",
                    tier=strategy.tier.value,
                    tenant=tenant.storage_key,
                    reason=exc.message,
                    detail=exc.detail,
                )
                continue
            except Exception as exc:
                failure = exc
                logger.warning(
                    "retrieval_tier_failed",
                    tier=strategy.tier.value,
                    tenant=tenant.storage_key,
                    error=str(exc),
                )
                continue
            if hits is None:
                logger.info("retrieval_tier_empty", tier=strategy.tier.value, tenant=tenant.storage_key)
                continue
            self._verify_tenant(tenant, hits, strategy.tier)
            return SearchResult(
                hits=hits,
                tier=strategy.tier,
                degraded=strategy.tier is SearchTier.TEXT,
            )

        if failure is not None:
            raise failure
        return SearchResult(hits=[], tier=None)

    @staticmethod
    def _verify_tenant(tenant: TenantKey, hits: list[SearchHit], tier: SearchTier):
        for hit in hits:
            if hit.chunk.tenant.storage_key != tenant.storage_key:
                logger.error(
                    "tenant_isolation_violation",
                    tier=tier.value,
                    requested_tenant=tenant.storage_key,
                    returned_tenant=hit.chunk.tenant.storage_key,
                    chunk_id=hit.chunk.id,
                )
                raise TenantIsolationViolation(
                    "Search returned a chunk outside the requested tenant",
                    detail=f"tier={tier.value} chunk_id={hit.chunk.id}",
                )

    def text_search(
        self,
        tenant: TenantKey,
        query: str,
        k: int = DEFAULT_TOP_K,
        *,
        source_filter: str | None = None,
    ) -> list[KnowledgeChunk]:
        """Keyword search within ``tenant``; no vectors involved."""
        tokens = unique_tokens(query, min_len=2, limit=_TEXT_QUERY_TOKEN_LIMIT)
        if not tokens:
            return []
        limit = max(1, int(k))

        if self._fts5_enabled:
            fts_query = " OR ".join(f'"{token}"' for token in tokens)
            sql = """
                SELECT c.*
                FROM chunks_fts
                JOIN chunks AS c ON c.seq = chunks_fts.rowid
                WHERE chunks_fts MATCH ?
                  AND c.tenant_key = ?
            """
            params: list[Any] = [fts_query, tenant.storage_key]
            if source_filter:
                sql += " AND c.source_name = ?"
                params.append(source_filter)
            sql += " ORDER BY bm25(chunks_fts), c.seq LIMIT ?"
            params.append(limit)
            try:
                with self._connection() as conn:
                    rows = conn.execute(sql, params).fetchall()
                return [self._row_to_chunk(row) for row in rows]
            except sqlite3.Error as exc:
                self._fts5_enabled = False
                logger.warning("vector_store_fts_query_failed", error=str(exc))

        wanted = set(tokens)
        scored = []
        for row in self._tenant_rows(tenant, source_filter=source_filter):
            overlap = len(wanted & set(tokenize_for_matching(f"{row['title']} {row['text']}", min_len=2)))
            if overlap:
                scored.append((overlap, row))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [self._row_to_chunk(row) for _, row in scored[:limit]]

    def find_near_duplicate(
        self,
        tenant: TenantKey,
        vector: Sequence[float],
        threshold: float = DEDUP_SCORE_THRESHOLD,
    ) -> SearchHit | None:
        """Closest existing chunk at or above the dedup threshold, if any."""
        if self.count(tenant) == 0:
            return None
        request = SearchRequest(
            tenant=tenant,
            vector=tuple(float(x) for x in vector),
            k=1,
            score_threshold=float(threshold),
        )
        hits = ManualCosineScan().run(self, request)
        return hits[0] if hits else None
