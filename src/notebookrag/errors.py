"""
Exception taxonomy for ingestion and query handling.
"""
from __future__ import annotations

from fastapi import HTTPException, status


class RAGError(Exception):
    """Base exception for all retrieval/generation errors."""

    def __init__(self, message: str, detail: str | None = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class InvalidInput(RAGError, ValueError):
    """Empty or malformed question / ingest text. Never retried."""


class EmbeddingUnavailable(RAGError):
    """Embedding model transport, auth or timeout failure."""


class RetrievalDegraded(RAGError):
    """A search tier is unavailable; the next tier takes over."""


class GenerationFailed(RAGError):
    """Language-model call failed or timed out."""


class TenantIsolationViolation(RAGError):
    """A search returned a chunk outside the requested tenant."""


class DimensionMismatchError(RAGError, ValueError):
    """Vectors of different lengths were mixed in one store or comparison."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            message=f"Vector dimension mismatch: expected {expected}, got {actual}",
            detail="All chunks in a store must come from the same embedding model.",
        )
        self.expected = expected
        self.actual = actual


_STATUS_BY_ERROR: tuple[tuple[type[RAGError], int], ...] = (
    (InvalidInput, status.HTTP_400_BAD_REQUEST),
    (EmbeddingUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for_error(error: RAGError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# ── Utility: convert to HTTPException ────────────────────

def rag_error_to_http(error: RAGError, status_code: int | None = None) -> HTTPException:
    """Convert a RAGError to an HTTPException with consistent JSON body."""
    return HTTPException(
        status_code=status_code or status_for_error(error),
        detail={
            "error": error.message,
            "detail": error.detail,
            "type": type(error).__name__,
        },
    )
