"""OpenAI chat completion provider."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

import openai
from openai import AsyncOpenAI

from observability.logger import get_logger
from observability.metrics import MetricsCollector, estimate_cost
from protocols.errors import ProviderError
from providers.retry import RetryPolicy, call_with_retry
from schemas.observability import LLMCallRecord

if TYPE_CHECKING:
    from schemas.messages import Message

log = get_logger(__name__)


def to_provider_error(exc: openai.OpenAIError, provider: str = "openai") -> ProviderError:
    """Map an OpenAI SDK exception onto ProviderError, flagging retryable ones."""
    if isinstance(exc, (openai.APIConnectionError, openai.RateLimitError)):
        transient = True
    elif isinstance(exc, openai.APIStatusError):
        transient = exc.status_code >= 500
    else:
        transient = False
    input_error = isinstance(exc, (openai.BadRequestError, openai.UnprocessableEntityError))
    return ProviderError(
        f"{provider}: {exc}", provider=provider, transient=transient, input_error=input_error,
    )


class OpenAILLM:
    """OpenAI GPT chat provider. Implements LLMProvider protocol."""

    provider_name: str = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4-turbo-preview",
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
        # Timeouts and retries are owned by call_with_retry
        self._client = AsyncOpenAI(
            api_key=api_key,
            timeout=self.retry_policy.timeout,
            max_retries=0,
        )

    async def complete(self, messages: list[Message]) -> str:
        start = time.perf_counter()

        async def request():
            try:
                return await self._client.chat.completions.create(
                    model=self.model_id,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    messages=[m.to_api() for m in messages],
                )
            except openai.OpenAIError as e:
                raise to_provider_error(e) from e

        try:
            response = await call_with_retry(
                request, self.retry_policy, provider=self.provider_name, operation="complete",
            )
        except ProviderError as e:
            self._record("complete", start, error=str(e))
            raise

        if not response.choices:
            raise ProviderError("openai: response contained no choices", provider=self.provider_name)
        text = response.choices[0].message.content or ""

        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0
        latency_ms = self._record("complete", start, input_tokens, output_tokens)

        log.info(
            "openai.complete.success",
            model=self.model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
        )
        return text

    async def stream(self, messages: list[Message]) -> AsyncIterator[str]:
        start = time.perf_counter()

        async def open_stream():
            try:
                return await self._client.chat.completions.create(
                    model=self.model_id,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    messages=[m.to_api() for m in messages],
                    stream=True,
                    stream_options={"include_usage": True},
                )
            except openai.OpenAIError as e:
                raise to_provider_error(e) from e

        try:
            response = await call_with_retry(
                open_stream, self.retry_policy, provider=self.provider_name, operation="stream",
            )
        except ProviderError as e:
            self._record("stream", start, error=str(e))
            raise

        input_tokens = output_tokens = 0
        try:
            async for chunk in response:
                # With include_usage the last chunk has no choices, only usage
                if chunk.usage:
                    input_tokens = chunk.usage.prompt_tokens
                    output_tokens = chunk.usage.completion_tokens
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except openai.OpenAIError as e:
            self._record("stream", start, input_tokens, output_tokens, error=str(e))
            raise to_provider_error(e) from e

        latency_ms = self._record("stream", start, input_tokens, output_tokens)
        log.info(
            "openai.stream.success",
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
