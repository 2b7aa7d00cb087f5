"""
Text-to-vector conversion through an external embedding model, plus the
cosine similarity used everywhere vectors are compared.
"""
from __future__ import annotations

import asyncio
from typing import Sequence

import numpy as np
from langchain_core.embeddings import Embeddings

from .config import EMBEDDING_MODEL_NAME, EMBEDDING_TIMEOUT_S, get_model_kwargs
from .errors import DimensionMismatchError, EmbeddingUnavailable, InvalidInput
from .observability import get_logger

logger = get_logger(__name__)

Vector = list[float]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 when either norm is zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatchError(int(va.size), int(vb.size))
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    score = float(np.dot(va, vb) / (norm_a * norm_b))
    # Rounding can push parallel vectors a hair past 1.
    return max(-1.0, min(1.0, score))


def build_default_embeddings() -> Embeddings:
    from langchain_huggingface import HuggingFaceEmbeddings

    return HuggingFaceEmbeddings(
        model_name=EMBEDDING_MODEL_NAME,
        model_kwargs=get_model_kwargs(),
        encode_kwargs={"normalize_embeddings": True},
    )


class EmbeddingClient:
    """Stateless wrapper over a LangChain ``Embeddings`` model.

    Every call is one outbound request (one per batch for ``embed_batch``).
    No retries happen here; callers own their retry policy.
    """

    def __init__(self, embeddings: Embeddings | None = None, *, timeout_s: float = EMBEDDING_TIMEOUT_S):
        self._embeddings = embeddings
        self.timeout_s = float(timeout_s)

    @property
    def embeddings(self) -> Embeddings:
        if self._embeddings is None:
            self._embeddings = build_default_embeddings()
        return self._embeddings

    @staticmethod
    def _validate_text(text: str) -> str:
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Text to embed must be a non-empty string")
        return text

    async def _call(self, operation: str, make_request, size: int):
        try:
            return await asyncio.wait_for(make_request(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            logger.warning("embedding_timeout", operation=operation, size=size, timeout_s=self.timeout_s)
            raise EmbeddingUnavailable(
                "Embedding request timed out",
                detail=f"{operation} exceeded {self.timeout_s:.1f}s",
            ) from exc
        except (asyncio.CancelledError, InvalidInput):
            raise
        except Exception as exc:
            logger.warning("embedding_failed", operation=operation, size=size, error=str(exc))
            raise EmbeddingUnavailable("Embedding model unavailable", detail=str(exc)) from exc

    async def embed(self, text: str) -> Vector:
        self._validate_text(text)
        vector = await self._call("embed", lambda: self.embeddings.aembed_query(text), 1)
        return [float(x) for x in vector]

    async def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        items = [self._validate_text(text) for text in texts]
        if not items:
            return []
        vectors = await self._call(
            "embed_batch", lambda: self.embeddings.aembed_documents(items), len(items)
        )
        if len(vectors) != len(items):
            raise EmbeddingUnavailable(
                "Embedding model returned an unexpected number of vectors",
                detail=f"expected {len(items)}, got {len(vectors)}",
            )
        return [[float(x) for x in vector] for vector in vectors]

    @staticmethod
    def similarity(a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    @staticmethod
    def most_similar(
        query_vector: Sequence[float],
        candidates: Sequence[Sequence[float]],
        top_k: int = 5,
        threshold: float = 0.7,
    ) -> list[tuple[int, float]]:
        """(index, score) pairs above ``threshold``, best first; ties keep input order."""
        scored = []
        for idx, candidate in enumerate(candidates):
            score = cosine_similarity(query_vector, candidate)
            if score >= threshold:
                scored.append((idx, score))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[: max(0, int(top_k))]
