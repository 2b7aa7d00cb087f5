"""Deterministic stand-ins for the embedding model, the language model and the native index."""
import asyncio
import math

from langchain_core.embeddings import Embeddings
from langchain_core.messages import AIMessage

from notebookrag.embedding_client import cosine_similarity


SENTENCE = "Alpha beta gamma delta epsilon zeta eta theta."
QUESTION = "What does the middle section say?"
ANSWER_TOKENS = ["The middle ", "section ", "covers orbits."]


def paragraph(first_word: str = "Alpha", sentences: int = 9) -> str:
    """A paragraph of identical 46-char sentences; ``first_word`` must be five letters."""
    first = SENTENCE.replace("Alpha", first_word, 1)
    return " ".join([first] + [SENTENCE] * (sentences - 1))


def sectioned_document(markers=("Kappa", "Orbit", "Prism"), paragraphs_per_section: int = 4) -> str:
    """Twelve 422-char paragraphs (5,086 chars); each section's first paragraph carries a marker word."""
    blocks = []
    for marker in markers:
        blocks.append(paragraph(marker))
        blocks.extend(paragraph() for _ in range(paragraphs_per_section - 1))
    return "\n\n".join(blocks)


def unit(*components: float) -> list[float]:
    norm = math.sqrt(sum(c * c for c in components))
    return [c / norm for c in components]


class RuleEmbeddings(Embeddings):
    """First rule whose substring occurs in the text decides the vector."""

    def __init__(self, rules, default=None, fail_on: str | None = None):
        self.rules = list(rules)
        self.default = list(default) if default is not None else [0.0, 1.0]
        self.fail_on = fail_on
        self.query_calls = 0
        self.document_calls = 0

    def _vector(self, text: str) -> list[float]:
        if self.fail_on and self.fail_on in text:
            raise ConnectionError("embedding endpoint refused the request")
        for needle, vector in self.rules:
            if needle in text:
                return list(vector)
        return list(self.default)

    def embed_documents(self, texts):
        self.document_calls += 1
        return [self._vector(text) for text in texts]

    def embed_query(self, text):
        self.query_calls += 1
        return self._vector(text)


def scenario_embeddings(**kwargs) -> RuleEmbeddings:
    """The question points at the "Orbit" section (cosine 0.81); the other sections score 0.2 and 0.1."""
    return RuleEmbeddings(
        [
            ("middle section", [1.0, 0.0]),
            ("Orbit", [0.81, 0.5864]),
            ("Kappa", [0.2, 0.9798]),
            ("Prism", [0.1, 0.995]),
        ],
        default=[0.0, 1.0],
        **kwargs,
    )


class SlowEmbeddings(Embeddings):
    def __init__(self, delay_s: float):
        self.delay_s = delay_s

    def embed_documents(self, texts):
        return [[1.0, 0.0] for _ in texts]

    def embed_query(self, text):
        return [1.0, 0.0]

    async def aembed_query(self, text):
        await asyncio.sleep(self.delay_s)
        return [1.0, 0.0]


class ScriptedChatModel:
    """Minimal async chat model: fixed answer, token-by-token streaming, optional failure or stall."""

    def __init__(self, tokens, *, delay_s: float = 0.0, fail_after: int | None = None, fail_invoke: bool = False):
        self.tokens = list(tokens)
        self.delay_s = delay_s
        self.fail_after = fail_after
        self.fail_invoke = fail_invoke
        self.pulled = 0
        self.closed = False
        self.invocations = []

    async def ainvoke(self, messages):
        self.invocations.append(messages)
        if self.fail_invoke:
            raise RuntimeError("model backend unavailable")
        await asyncio.sleep(self.delay_s)
        return AIMessage(content="".join(self.tokens))

    async def astream(self, messages):
        self.invocations.append(messages)
        try:
            for idx, token in enumerate(self.tokens):
                if self.fail_after is not None and idx >= self.fail_after:
                    raise RuntimeError("connection reset mid-stream")
                if self.delay_s:
                    await asyncio.sleep(self.delay_s)
                self.pulled += 1
                yield AIMessage(content=token)
        finally:
            self.closed = True


class InMemoryNativeIndex:
    """Exact cosine index honouring the tenant filter, with switches for failure modes."""

    def __init__(self, *, fail_queries: bool = False, ignore_tenant: bool = False, empty: bool = False):
        self.fail_queries = fail_queries
        self.ignore_tenant = ignore_tenant
        self.empty = empty
        self.records = {}
        self.query_calls = 0
        self.opened = False

    def open(self):
        self.opened = True

    def close(self):
        self.opened = False

    def count(self):
        return len(self.records)

    def reset(self):
        self.records.clear()

    def upsert(self, chunks):
        for chunk in chunks:
            self.records[chunk.id] = (chunk.tenant.storage_key, chunk.source_name, list(chunk.vector))

    def delete_ids(self, ids):
        for chunk_id in ids:
            self.records.pop(chunk_id, None)

    def delete_tenant(self, tenant_key):
        for chunk_id in [cid for cid, rec in self.records.items() if rec[0] == tenant_key]:
            del self.records[chunk_id]

    def query(self, tenant_key, vector, k, source_filter=None):
        from notebookrag.errors import RetrievalDegraded

        self.query_calls += 1
        if self.fail_queries:
            raise RetrievalDegraded("index offline")
        if self.empty:
            return []
        scored = []
        for chunk_id, (owner, source, stored) in self.records.items():
            if owner != tenant_key and not self.ignore_tenant:
                continue
            if source_filter and source != source_filter:
                continue
            scored.append((chunk_id, cosine_similarity(vector, stored)))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:k]
