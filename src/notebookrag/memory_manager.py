"""
Conversational memory for the notebook assistant.

Each session keeps a bounded, ordered list of question/answer turns. Memory is
process-local and is not required to survive restarts. ``ConversationMemory``
itself is not thread-safe; ``MemoryRegistry`` hands out one memory and one
``asyncio.Lock`` per session so the orchestrator can serialize access.
"""
from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from .config import MEMORY_CONTEXT_TURNS, MEMORY_MAX_TURNS
from .tokenization import estimate_token_count, truncate_to_token_budget

TurnRole = Literal["question", "answer"]
_ROLE_LABELS = {"question": "User", "answer": "Assistant"}


@dataclass(frozen=True)
class ConversationTurn:
    role: TurnRole
    text: str
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.role not in _ROLE_LABELS:
            raise ValueError(f"Unknown turn role: {self.role!r}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConversationMemory:
    """FIFO-bounded turn history; the oldest turns are evicted first."""

    def __init__(self, max_turns: int = MEMORY_MAX_TURNS):
        if int(max_turns) < 1:
            raise ValueError("max_turns must be at least 1")
        self.max_turns = int(max_turns)
        self._turns: deque[ConversationTurn] = deque(maxlen=self.max_turns)

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, turn: ConversationTurn):
        self._turns.append(turn)

    def recent(self, n: int | None = None) -> list[ConversationTurn]:
        """Last ``n`` turns, most recent last."""
        turns = list(self._turns)
        if n is None:
            return turns
        count = max(0, int(n))
        return turns[-count:] if count else []

    def clear(self):
        self._turns.clear()


def format_memory_context(turns: list[ConversationTurn], token_budget: int) -> str:
    """Renders turns as a transcript, dropping the oldest lines that overflow the budget."""
    lines = [f"{_ROLE_LABELS[turn.role]}: {turn.text.strip()}" for turn in turns if turn.text.strip()]
    kept: list[str] = []
    used = 0
    for line in reversed(lines):
        cost = estimate_token_count(line)
        if used + cost > token_budget:
            if not kept:
                kept.append(truncate_to_token_budget(line, token_budget))
            break
        kept.append(line)
        used += cost
    return "\n".join(reversed(kept))


class MemoryRegistry:
    """Session key -> ConversationMemory, with a per-session async lock."""

    def __init__(self, max_turns: int = MEMORY_MAX_TURNS, context_turns: int = MEMORY_CONTEXT_TURNS):
        self.max_turns = int(max_turns)
        self.context_turns = int(context_turns)
        self._sessions: dict[str, ConversationMemory] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._guard = threading.Lock()

    def get(self, session_key: str) -> ConversationMemory:
        with self._guard:
            memory = self._sessions.get(session_key)
            if memory is None:
                memory = ConversationMemory(self.max_turns)
                self._sessions[session_key] = memory
            return memory

    def lock(self, session_key: str) -> asyncio.Lock:
        with self._guard:
            session_lock = self._locks.get(session_key)
            if session_lock is None:
                session_lock = asyncio.Lock()
                self._locks[session_key] = session_lock
            return session_lock

    def turns(self, session_key: str) -> list[ConversationTurn]:
        with self._guard:
            memory = self._sessions.get(session_key)
        return memory.recent() if memory is not None else []

    def context_turns_for(self, session_key: str) -> list[ConversationTurn]:
        return self.get(session_key).recent(self.context_turns)

    async def record_exchange(self, session_key: str, question: str, answer: str):
        """Appends the question and answer together so a session never holds half an exchange."""
        async with self.lock(session_key):
            memory = self.get(session_key)
            memory.append(ConversationTurn(role="question", text=question))
            memory.append(ConversationTurn(role="answer", text=answer))

    def clear(self, session_key: str) -> bool:
        with self._guard:
            memory = self._sessions.pop(session_key, None)
            self._locks.pop(session_key, None)
        if memory is None:
            return False
        memory.clear()
        return True

    def session_count(self) -> int:
        with self._guard:
            return len(self._sessions)
