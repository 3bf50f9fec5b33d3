"""Completion collaborator port.

The engine only needs one-shot text completion (for the model-assisted
entity pass). ``ChatCompletionAdapter`` turns a streaming chat LLM, which
yields text chunks or ``{"type": "text_delta"}`` dicts, into that shape.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Protocol, runtime_checkable


@runtime_checkable
class CompletionProvider(Protocol):
    """Anything that completes a prompt into text."""

    async def complete(self, prompt: str) -> str:
        ...


class StreamingChatLLM(Protocol):
    def chat_completion(
        self, messages: list[dict], system: str | None = None
    ) -> AsyncIterator[Any]:
        ...


class ChatCompletionAdapter:
    """Adapts a streaming ``chat_completion`` LLM to ``CompletionProvider``."""

    def __init__(self, llm: StreamingChatLLM, system: str | None = None):
        self._llm = llm
        self._system = system

    async def complete(self, prompt: str) -> str:
        messages = [{"role": "user", "content": prompt}]
        response_parts: list[str] = []
        stream = self._llm.chat_completion(messages=messages, system=self._system)
        async for chunk in stream:
            if isinstance(chunk, str):
                response_parts.append(chunk)
            elif isinstance(chunk, dict) and chunk.get("type") == "text_delta":
                response_parts.append(chunk.get("text", ""))
        return "".join(response_parts).strip()
