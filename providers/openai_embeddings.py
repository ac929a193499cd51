"""OpenAI embeddings provider with batching and bounded concurrency."""

from __future__ import annotations

import asyncio
import time

import openai
from openai import AsyncOpenAI

from observability.logger import get_logger
from observability.metrics import MetricsCollector, estimate_cost
from protocols.errors import ProviderError
from providers.openai_llm import to_provider_error
from providers.retry import RetryPolicy, call_with_retry
from schemas.observability import LLMCallRecord

log = get_logger(__name__)

MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbeddings:
    """Embeddings via the OpenAI API. Implements EmbeddingProvider protocol.

    Inputs are split into batches of ``batch_size``; at most ``concurrency``
    batches are in flight at once so ingestion stays under provider rate limits.
    """

    provider_name: str = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        *,
        dim: int | None = None,
        batch_size: int = 64,
        concurrency: int = 4,
        retry_policy: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be positive")
        self.model_id = model
        self.dim = dim or MODEL_DIMENSIONS.get(model, 1536)
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics
        self._semaphore = asyncio.Semaphore(concurrency)
        self._client = AsyncOpenAI(
            api_key=api_key,
            timeout=self.retry_policy.timeout,
            max_retries=0,
        )

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        batches = [
            texts[i : i + self.batch_size] for i in range(0, len(texts), self.batch_size)
        ]
        results = await asyncio.gather(*(self._embed_one_batch(b) for b in batches))
        return [vec for batch in results for vec in batch]

    async def _embed_one_batch(self, texts: list[str]) -> list[list[float]]:
        kwargs: dict = {"model": self.model_id, "input": texts}
        # Only the v3 models accept a dimensions override
        if self.model_id.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dim

        async def request():
            try:
                return await self._client.embeddings.create(**kwargs)
            except openai.OpenAIError as e:
                raise to_provider_error(e) from e

        async with self._semaphore:
            start = time.perf_counter()
            try:
                response = await call_with_retry(
                    request, self.retry_policy, provider=self.provider_name, operation="embed",
                )
            except ProviderError as e:
                self._record(start, 0, error=str(e))
                raise

        if len(response.data) != len(texts):
            raise ProviderError(
                f"openai: expected {len(texts)} embeddings, got {len(response.data)}",
                provider=self.provider_name,
            )
        # The API documents ordering by index; sort anyway so order never depends on it
        vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

        tokens = response.usage.total_tokens if response.usage else 0
        latency_ms = self._record(start, tokens)
        log.info(
            "openai.embed.batch",
            model=self.model_id,
            count=len(vectors),
            tokens=tokens,
            latency_ms=latency_ms,
        )
        return vectors

    def _record(self, start: float, tokens: int, *, error: str = "") -> float:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        if self.metrics is not None:
            self.metrics.record(
                LLMCallRecord(
                    operation="embed",
                    provider=self.provider_name,
                    model_id=self.model_id,
                    input_tokens=tokens,
                    estimated_cost_usd=estimate_cost(self.model_id, tokens, 0),
                    latency_ms=latency_ms,
                    success=not error,
                    error_message=error,
                )
            )
        return latency_ms
