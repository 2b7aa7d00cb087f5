"""
Language-model adapter: Groq chat models through the API or a local Ollama
model, with independent timeouts for full completions and streamed tokens.
"""
from __future__ import annotations

import asyncio
import os
import re
from typing import Any, AsyncIterator

from langchain_core.messages import BaseMessage
from langchain_ollama import OllamaLLM

from .config import (
    API_MODEL_NAME,
    LLM_TIMEOUT_S,
    LOCAL_MODEL_NAME,
    STREAM_IDLE_TIMEOUT_S,
    USE_API_LLM,
    console,
)
from .errors import GenerationFailed
from .observability import get_logger

logger = get_logger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)
_GENERATION_OPTIONS = {
    "temperature": 0.4,
    "top_p": 0.95,
    "num_predict": 1200,
    "repeat_penalty": 1.15,
}


def initialize_llm():
    """Builds the configured model, or ``None`` when it cannot be used."""
    if USE_API_LLM:
        if not os.getenv("GROQ_API_KEY"):
            console.print("[bold red]GROQ_API_KEY not set. LLM disabled.[/bold red]")
            return None
        from langchain_groq import ChatGroq

        console.print(f"[green]Using API Model: {API_MODEL_NAME}[/green]")
        return ChatGroq(
            model_name=API_MODEL_NAME,
            temperature=_GENERATION_OPTIONS["temperature"],
            top_p=_GENERATION_OPTIONS["top_p"],
            max_tokens=_GENERATION_OPTIONS["num_predict"],
            groq_api_key=os.getenv("GROQ_API_KEY"),
        )
    console.print(f"[green]Using Local Model: {LOCAL_MODEL_NAME}[/green]")
    return OllamaLLM(
        model=LOCAL_MODEL_NAME,
        temperature=_GENERATION_OPTIONS["temperature"],
        top_p=_GENERATION_OPTIONS["top_p"],
        num_predict=_GENERATION_OPTIONS["num_predict"],
        repeat_penalty=_GENERATION_OPTIONS["repeat_penalty"],
    )


def coerce_stream_chunk(chunk: Any) -> str:
    if chunk is None:
        return ""
    if isinstance(chunk, str):
        return chunk
    if isinstance(chunk, dict):
        for key in ("answer", "output_text", "text", "content"):
            value = chunk.get(key)
            if value is not None:
                return str(value)
    content = getattr(chunk, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            elif hasattr(item, "text"):
                parts.append(str(getattr(item, "text")))
            else:
                parts.append(str(item))
        return "".join(parts)
    return str(chunk)


def strip_reasoning(text: str) -> str:
    return _THINK_RE.sub("", str(text or "")).strip()


class LLMClient:
    """Async completion and token streaming over any LangChain runnable model."""

    def __init__(
        self,
        model: Any = None,
        *,
        timeout_s: float = LLM_TIMEOUT_S,
        idle_timeout_s: float = STREAM_IDLE_TIMEOUT_S,
    ):
        self._model = model
        self._model_loaded = model is not None
        self.timeout_s = float(timeout_s)
        self.idle_timeout_s = float(idle_timeout_s or 0.0)

    @property
    def model(self):
        if not self._model_loaded:
            self._model = initialize_llm()
            self._model_loaded = True
        return self._model

    def _require_model(self):
        model = self.model
        if model is None:
            raise GenerationFailed("Language model is not configured")
        return model

    async def complete(self, messages: list[BaseMessage]) -> str:
        model = self._require_model()
        try:
            response = await asyncio.wait_for(model.ainvoke(messages), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            logger.warning("llm_timeout", mode="complete", timeout_s=self.timeout_s)
            raise GenerationFailed("Language model timed out", detail=f"no answer after {self.timeout_s:.1f}s") from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("llm_failed", mode="complete", error=str(exc))
            raise GenerationFailed("Language model call failed", detail=str(exc)) from exc
        answer = strip_reasoning(coerce_stream_chunk(response))
        if not answer:
            raise GenerationFailed("Language model returned an empty answer")
        return answer

    async def stream(self, messages: list[BaseMessage]) -> AsyncIterator[str]:
        """Yields text pieces as they arrive.

        Each token wait is bounded by ``idle_timeout_s`` (0 disables it). When
        the consumer stops iterating, the upstream stream is closed so no more
        tokens are pulled.
        """
        model = self._require_model()
        upstream = model.astream(messages)
        try:
            while True:
                try:
                    if self.idle_timeout_s > 0.0:
                        chunk = await asyncio.wait_for(upstream.__anext__(), timeout=self.idle_timeout_s)
                    else:
                        chunk = await upstream.__anext__()
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as exc:
                    logger.warning("llm_stream_stalled", idle_timeout_s=self.idle_timeout_s)
                    raise GenerationFailed(
                        "Streaming response stalled",
                        detail=f"no token for {self.idle_timeout_s:.1f}s",
                    ) from exc
                except (asyncio.CancelledError, GenerationFailed):
                    raise
                except Exception as exc:
                    logger.warning("llm_failed", mode="stream", error=str(exc))
                    raise GenerationFailed("Language model stream failed", detail=str(exc)) from exc
                text = coerce_stream_chunk(chunk)
                if text:
                    yield text
        finally:
            aclose = getattr(upstream, "aclose", None)
            if callable(aclose):
                await aclose()
