"""
Shared tokenization helpers: Unicode word matching for keyword search and
model-token counting for prompt budgets.
"""
from __future__ import annotations

import re

import tiktoken

from .observability import get_logger

logger = get_logger(__name__)

_UNICODE_WORD_RE = re.compile(r"\w+", flags=re.UNICODE)
_TOKEN_ENCODER = None
_ENCODER_FAILED = False


def tokenize_for_matching(text: str, *, min_len: int = 1, limit: int | None = None) -> list[str]:
    """
    Tokenizes text with Unicode-aware word boundaries.
    Keeps letters/numbers from non-Latin scripts and normalizes via casefold().
    """
    safe_min_len = max(1, int(min_len))
    max_tokens = int(limit) if limit is not None else None

    out: list[str] = []
    for raw in _UNICODE_WORD_RE.findall(str(text or "").casefold()):
        token = raw.strip("_")
        if not token:
            continue
        if len(token) < safe_min_len:
            continue
        if not any(ch.isalnum() for ch in token):
            continue
        out.append(token)
        if max_tokens is not None and len(out) >= max_tokens:
            break
    return out


def unique_tokens(text: str, *, min_len: int = 2, limit: int | None = None) -> list[str]:
    """Deduplicated tokens in first-seen order."""
    seen: set[str] = set()
    out: list[str] = []
    for token in tokenize_for_matching(text, min_len=min_len):
        if token in seen:
            continue
        seen.add(token)
        out.append(token)
        if limit is not None and len(out) >= limit:
            break
    return out


def _get_token_encoder():
    global _TOKEN_ENCODER, _ENCODER_FAILED
    if _TOKEN_ENCODER is None and not _ENCODER_FAILED:
        try:
            _TOKEN_ENCODER = tiktoken.get_encoding("cl100k_base")
        except Exception as exc:
            # The BPE file is fetched on first use; offline hosts count words instead.
            _ENCODER_FAILED = True
            logger.warning("token_encoder_unavailable", error=str(exc))
    return _TOKEN_ENCODER


def estimate_token_count(text: str) -> int:
    payload = str(text or "")
    if not payload:
        return 0
    encoder = _get_token_encoder()
    if encoder is not None:
        return int(len(encoder.encode(payload)))
    return max(1, len(tokenize_for_matching(payload, min_len=1)))


def truncate_to_token_budget(text: str, max_tokens: int) -> str:
    budget = max(0, int(max_tokens))
    payload = str(text or "").strip()
    if budget <= 0 or not payload:
        return ""
    if estimate_token_count(payload) <= budget:
        return payload

    encoder = _get_token_encoder()
    if encoder is not None:
        encoded = encoder.encode(payload)
        return encoder.decode(encoded[:budget]).strip()

    tokens = payload.split()
    return " ".join(tokens[:budget]).strip()
