"""
Prompt assembly for grounded and ungrounded answers.
"""
from __future__ import annotations

from langchain_core.messages import BaseMessage
from langchain_core.prompts import ChatPromptTemplate

from .config import PROMPT_DOCS_RATIO, PROMPT_MEMORY_RATIO, PROMPT_TOTAL_TOKEN_BUDGET
from .memory_manager import ConversationTurn, format_memory_context
from .tokenization import estimate_token_count, truncate_to_token_budget
from .vector_store import SearchHit

CONTEXT_SEPARATOR = "\n\n---\n\n"
NO_MEMORY_PLACEHOLDER = "(no earlier conversation)"

GROUNDED_SYSTEM_PROMPT = """You are a grounded assistant answering questions about the user's own documents.
Use only the provided context. Do not invent facts.
If the context only partly covers the question, answer the part it covers and say what is missing.
Refer to documents by their titles when it helps the reader find the source.
Use the conversation history only to resolve references such as "it" or "that"; it is not a source of facts."""

GROUNDED_HUMAN_PROMPT = """CONTEXT:
{context}

CONVERSATION HISTORY:
{history}

QUESTION:
{question}"""

UNGROUNDED_SYSTEM_PROMPT = """You are a helpful assistant. No passages from the user's documents matched this question.
Give a brief best-effort answer from general knowledge and say plainly that it is not based on their documents.
If you do not know, say so."""

UNGROUNDED_HUMAN_PROMPT = """CONVERSATION HISTORY:
{history}

QUESTION:
{question}"""

GROUNDED_PROMPT = ChatPromptTemplate.from_messages(
    [("system", GROUNDED_SYSTEM_PROMPT), ("human", GROUNDED_HUMAN_PROMPT)]
)
UNGROUNDED_PROMPT = ChatPromptTemplate.from_messages(
    [("system", UNGROUNDED_SYSTEM_PROMPT), ("human", UNGROUNDED_HUMAN_PROMPT)]
)


def _token_budgets(total_budget: int) -> tuple[int, int]:
    total = max(1, int(total_budget))
    return int(total * PROMPT_DOCS_RATIO), int(total * PROMPT_MEMORY_RATIO)


def format_context(hits: list[SearchHit], token_budget: int) -> str:
    """Document blocks in hit order; the block that crosses the budget is truncated and the rest dropped."""
    blocks: list[str] = []
    used = 0
    for idx, hit in enumerate(hits, start=1):
        chunk = hit.chunk
        label = chunk.title or chunk.source_name or "Untitled"
        header = f"Document {idx} - {label}"
        if chunk.category:
            header += f" ({chunk.category})"
        block = f"{header}:\n{chunk.text.strip()}"
        cost = estimate_token_count(block)
        remaining = token_budget - used
        if cost > remaining:
            if remaining > 0:
                blocks.append(truncate_to_token_budget(block, remaining))
            break
        blocks.append(block)
        used += cost
    return CONTEXT_SEPARATOR.join(blocks)


def build_messages(
    question: str,
    hits: list[SearchHit],
    memory_turns: list[ConversationTurn] | None = None,
    *,
    total_budget: int = PROMPT_TOTAL_TOKEN_BUDGET,
) -> list[BaseMessage]:
    docs_budget, memory_budget = _token_budgets(total_budget)
    history = format_memory_context(memory_turns or [], memory_budget) or NO_MEMORY_PLACEHOLDER
    if not hits:
        return UNGROUNDED_PROMPT.format_messages(history=history, question=question.strip())
    return GROUNDED_PROMPT.format_messages(
        context=format_context(hits, docs_budget),
        history=history,
        question=question.strip(),
    )
