"""Timeout and retry policy for remote provider calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from observability.logger import get_logger
from protocols.errors import ProviderError

log = get_logger(__name__)
T = TypeVar("T")


class RetryPolicy(BaseModel):
    """How many times and how patiently a provider call is attempted."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(default=3, ge=1)
    initial_wait: float = Field(default=1.0, ge=0.0)
    max_wait: float = Field(default=10.0, ge=0.0)
    timeout: float = Field(default=30.0, gt=0.0)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.transient


def _log_retry(provider: str, operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.warning(
            "provider.retry",
            provider=provider,
            operation=operation,
            attempt=state.attempt_number,
            error=str(exc),
        )

    return before_sleep


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    provider: str,
    operation: str,
) -> T:
    """Run ``fn`` with a per-attempt timeout, retrying transient ProviderErrors.

    A timeout is classified as a transient ProviderError. The call is made at
    most ``policy.attempts`` times; the last error is re-raised.
    """

    async def attempt_once() -> T:
        try:
            return await asyncio.wait_for(fn(), timeout=policy.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"{provider} {operation} timed out after {policy.timeout}s",
                provider=provider,
                transient=True,
            ) from e

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential(multiplier=policy.initial_wait, max=policy.max_wait),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry(provider, operation),
        reraise=True,
    ):
        with attempt:
            return await attempt_once()

    raise AssertionError("unreachable")  # pragma: no cover
