"""LLM provider protocol (structural subtyping, no ABC needed)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from schemas.messages import Message


@runtime_checkable
class LLMProvider(Protocol):
    """Any class that can answer a message history can be used as an LLM provider."""

    provider_name: str
    model_id: str

    async def complete(self, messages: list[Message]) -> str:
        """Send the conversation to the LLM and return the full reply text."""
        ...

    def stream(self, messages: list[Message]) -> AsyncIterator[str]:
        """Send the conversation to the LLM and yield reply text as it arrives."""
        ...
