"""Claude API provider with retry, timeouts, and observability."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

import anthropic

from observability.logger import get_logger
from observability.metrics import MetricsCollector, estimate_cost
from protocols.errors import ProviderError
from providers.retry import RetryPolicy, call_with_retry
from schemas.messages import Role
from schemas.observability import LLMCallRecord

if TYPE_CHECKING:
    from schemas.messages import Message

log = get_logger(__name__)


def to_provider_error(exc: anthropic.AnthropicError) -> ProviderError:
    """Map an Anthropic SDK exception onto ProviderError, flagging retryable ones."""
    if isinstance(exc, (anthropic.APIConnectionError, anthropic.RateLimitError)):
        transient = True
    elif isinstance(exc, anthropic.APIStatusError):
        # 529 is "overloaded"
        transient = exc.status_code >= 500
    else:
        transient = False
    input_error = isinstance(exc, (anthropic.BadRequestError, anthropic.UnprocessableEntityError))
    return ProviderError(
        f"anthropic: {exc}", provider="anthropic", transient=transient, input_error=input_error,
    )


def split_system(messages: list[Message]) -> tuple[str, list[dict[str, str]]]:
    """Claude takes system instructions as a parameter, not as a turn."""
    system = "\n\n".join(m.content for m in messages if m.role is Role.SYSTEM)
    turns = [m.to_api() for m in messages if m.role is not Role.SYSTEM]
    return system, turns


class AnthropicLLM:
    """Claude LLM provider via Anthropic SDK. Implements LLMProvider protocol."""

    provider_name: str = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-sonnet-20241022",
        *,
        temperature: float = 0.0,
        max_tokens: int = 1024,
        retry_policy: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.model_id = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics
        self._client = anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=self.retry_policy.timeout,
            max_retries=0,
        )

    def _request_kwargs(self, messages: list[Message]) -> dict:
        system, turns = split_system(messages)
        kwargs: dict = {
            "model": self.model_id,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": turns,
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(self, messages: list[Message]) -> str:
        start = time.perf_counter()
        kwargs = self._request_kwargs(messages)

        async def request():
            try:
                return await self._client.messages.create(**kwargs)
            except anthropic.AnthropicError as e:
                raise to_provider_error(e) from e

        try:
            message = await call_with_retry(
                request, self.retry_policy, provider=self.provider_name, operation="complete",
            )
        except ProviderError as e:
            self._record("complete", start, error=str(e))
            raise

        text = "".join(block.text for block in message.content if block.type == "text")
        latency_ms = self._record(
            "complete", start, message.usage.input_tokens, message.usage.output_tokens,
        )

        log.info(
            "anthropic.complete.success",
            model=self.model_id,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
            latency_ms=latency_ms,
        )
        return text

    async def stream(self, messages: list[Message]) -> AsyncIterator[str]:
        start = time.perf_counter()
        kwargs = self._request_kwargs(messages)

        async def open_stream():
            try:
                return await self._client.messages.create(stream=True, **kwargs)
            except anthropic.AnthropicError as e:
                raise to_provider_error(e) from e

        try:
            events = await call_with_retry(
                open_stream, self.retry_policy, provider=self.provider_name, operation="stream",
            )
        except ProviderError as e:
            self._record("stream", start, error=str(e))
            raise

        input_tokens = output_tokens = 0
        try:
            async for event in events:
                if event.type == "message_start":
                    input_tokens = event.message.usage.input_tokens
                elif event.type == "message_delta":
                    output_tokens = event.usage.output_tokens
                elif event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield event.delta.text
        except anthropic.AnthropicError as e:
            self._record("stream", start, input_tokens, output_tokens, error=str(e))
            raise to_provider_error(e) from e

        latency_ms = self._record("stream", start, input_tokens, output_tokens)
        log.info(
            "anthropic.stream.success",
            model=self.model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
        )

    def _record(
        self,
        operation: str,
        start: float,
        input_tokens: int = 0,
        output_tokens: int = 0,
        *,
        error: str = "",
    ) -> float:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        if self.metrics is not None:
            self.metrics.record(
                LLMCallRecord(
                    operation=operation,
                    provider=self.provider_name,
                    model_id=self.model_id,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    estimated_cost_usd=estimate_cost(self.model_id, input_tokens, output_tokens),
                    latency_ms=latency_ms,
                    success=not error,
                    error_message=error,
                )
            )
        return latency_ms
