"""Deterministic dummy LLM for tests and offline demos."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from schemas.messages import Role

if TYPE_CHECKING:
    from schemas.messages import Message

_FIRST_SNIPPET = re.compile(
    r"^\[1\] (?P<source>.+?) \(score: -?[\d.]+\)\n(?P<content>.*?)(?=\n\n\[2\] |\Z)",
    re.MULTILINE | re.DOTALL,
)

NO_ANSWER = "I could not find anything about that in the knowledge base."


class DummyLLM:
    """Answers with the best retrieved snippet. Implements LLMProvider protocol."""

    provider_name: str = "dummy"
    model_id: str = "dummy-extractive-v1"

    def __init__(self, max_chars: int = 300) -> None:
        self.max_chars = max_chars
        self.calls: list[list[Message]] = []

    async def complete(self, messages: list[Message]) -> str:
        self.calls.append(list(messages))
        return self._answer(messages)

    async def stream(self, messages: list[Message]) -> AsyncIterator[str]:
        self.calls.append(list(messages))
        words = self._answer(messages).split(" ")
        for i, word in enumerate(words):
            yield word if i == len(words) - 1 else word + " "

    def _answer(self, messages: list[Message]) -> str:
        for m in messages:
            if m.role is not Role.SYSTEM:
                continue
            match = _FIRST_SNIPPET.search(m.content)
            if match:
                content = " ".join(match.group("content").split())
                if len(content) > self.max_chars:
                    content = content[: self.max_chars].rstrip() + "..."
                return f"According to {match.group('source')}: {content}"
        return NO_ANSWER
