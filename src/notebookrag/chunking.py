"""
Paragraph-aware chunking of extracted text into overlapping windows.

Paragraphs (blank-line separated blocks) are packed greedily into chunks of at
most ``max_chunk_size`` characters. Each new chunk opens with the trailing
sentences of the previous one so retrieval keeps continuity across the cut.
A paragraph longer than the limit becomes its own oversized chunk unless
``split_oversized`` is enabled, in which case it is broken down with
LangChain's recursive character splitter.
"""
from __future__ import annotations

import re

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .config import CHUNK_OVERLAP, CHUNK_SIZE, CHUNK_SPLIT_OVERSIZED
from .errors import InvalidInput

_PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")
_SENTENCE_BREAK_RE = re.compile(r"(?<=[.!?])\s+")
PARAGRAPH_SEPARATOR = "\n\n"


def split_paragraphs(text: str) -> list[str]:
    return [block.strip() for block in _PARAGRAPH_BREAK_RE.split(str(text or "")) if block.strip()]


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_BREAK_RE.split(str(text or "")) if part.strip()]


def overlap_tail(chunk: str, overlap: int) -> str:
    """Trailing sentences of ``chunk`` whose joined length stays within ``overlap``.

    Falls back to a character tail trimmed to a word boundary when even the
    last sentence is longer than ``overlap``.
    """
    if overlap <= 0 or not chunk:
        return ""
    picked: list[str] = []
    length = 0
    for sentence in reversed(split_sentences(chunk)):
        extra = len(sentence) + (1 if picked else 0)
        if length + extra > overlap:
            break
        picked.append(sentence)
        length += extra
    if picked:
        return " ".join(reversed(picked))

    tail = chunk[-overlap:]
    cut = tail.find(" ")
    if 0 <= cut < len(tail) - 1:
        tail = tail[cut + 1:]
    return tail.strip()


class ChunkingPipeline:
    """Splits long text into overlapping chunks sized for embedding."""

    def __init__(
        self,
        max_chunk_size: int = CHUNK_SIZE,
        overlap: int = CHUNK_OVERLAP,
        *,
        split_oversized: bool = CHUNK_SPLIT_OVERSIZED,
    ):
        self.max_chunk_size, self.overlap = self._validate(max_chunk_size, overlap)
        self.split_oversized = bool(split_oversized)

    @staticmethod
    def _validate(max_chunk_size: int, overlap: int) -> tuple[int, int]:
        size = int(max_chunk_size)
        carry = int(overlap)
        if size < 1:
            raise InvalidInput("max_chunk_size must be positive")
        if carry < 0:
            raise InvalidInput("overlap must not be negative")
        if carry >= size:
            raise InvalidInput("overlap must be smaller than max_chunk_size")
        return size, carry

    def _fit_paragraphs(self, paragraphs: list[str], size: int, overlap: int) -> list[str]:
        if not self.split_oversized:
            return paragraphs
        splitter = RecursiveCharacterTextSplitter(
            chunk_size=size,
            chunk_overlap=min(overlap, size // 2),
            separators=["\n", ". ", " ", ""],
        )
        fitted: list[str] = []
        for paragraph in paragraphs:
            if len(paragraph) > size:
                fitted.extend(piece.strip() for piece in splitter.split_text(paragraph) if piece.strip())
            else:
                fitted.append(paragraph)
        return fitted

    def split(
        self,
        text: str,
        max_chunk_size: int | None = None,
        overlap: int | None = None,
    ) -> list[str]:
        size, carry = self._validate(
            self.max_chunk_size if max_chunk_size is None else max_chunk_size,
            self.overlap if overlap is None else overlap,
        )
        paragraphs = self._fit_paragraphs(split_paragraphs(text), size, carry)

        chunks: list[str] = []
        current = ""
        for paragraph in paragraphs:
            if not current:
                current = paragraph
                continue
            candidate = f"{current}{PARAGRAPH_SEPARATOR}{paragraph}"
            if len(candidate) <= size:
                current = candidate
                continue

            chunks.append(current)
            tail = overlap_tail(current, carry)
            seeded = f"{tail}{PARAGRAPH_SEPARATOR}{paragraph}" if tail else paragraph
            # Drop the carried tail rather than push a fitting paragraph over the limit.
            current = seeded if len(seeded) <= size else paragraph
        if current:
            chunks.append(current)
        return chunks


def split_text_into_chunks(text: str, max_chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> list[str]:
    return ChunkingPipeline(max_chunk_size, overlap).split(text)
