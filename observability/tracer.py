"""Request tracing: walks a chat request through its states with timings."""

from __future__ import annotations

import time
from datetime import datetime
from enum import Enum
from uuid import uuid4

from observability.logger import get_logger
from schemas.observability import RequestRecord, StateTiming

log = get_logger(__name__)


class RequestState(str, Enum):
    RECEIVED = "received"
    EMBEDDING = "embedding"
    RETRIEVING = "retrieving"
    COMPOSING = "composing"
    GENERATING = "generating"
    DONE = "done"
    FAILED = "failed"


_TERMINAL = {RequestState.DONE, RequestState.FAILED}

_NEXT: dict[RequestState, RequestState] = {
    RequestState.RECEIVED: RequestState.EMBEDDING,
    RequestState.EMBEDDING: RequestState.RETRIEVING,
    RequestState.RETRIEVING: RequestState.COMPOSING,
    RequestState.COMPOSING: RequestState.GENERATING,
    RequestState.GENERATING: RequestState.DONE,
}


class RequestTracer:
    """Tracks one request through Received → … → Done, or into Failed.

    Transitions only move forward one step at a time; ``fail`` is allowed from
    any non-terminal state.
    """

    def __init__(self) -> None:
        self.request_id = str(uuid4())
        self.state = RequestState.RECEIVED
        self.history: list[StateTiming] = []
        self.retrieved_count = 0
        self.error: BaseException | None = None
        self._started_at = datetime.utcnow()
        self._state_start = time.perf_counter()
        log.debug("rag.request.state", request_id=self.request_id, state=self.state.value)

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL

    def advance(self, state: RequestState) -> None:
        if self.finished or _NEXT.get(self.state) is not state:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {state.value}")
        self._enter(state)

    def fail(self, error: BaseException) -> None:
        if self.finished:
            raise RuntimeError(f"Request already {self.state.value}")
        self.error = error
        self._enter(RequestState.FAILED)
        log.warning(
            "rag.request.failed",
            request_id=self.request_id,
            failed_in=self.history[-1].state,
            error_type=type(error).__name__,
            error=str(error),
        )

    def _enter(self, state: RequestState) -> None:
        now = time.perf_counter()
        self.history.append(
            StateTiming(state=self.state.value, latency_ms=round((now - self._state_start) * 1000, 2))
        )
        self.state = state
        self._state_start = now
        log.debug("rag.request.state", request_id=self.request_id, state=state.value)

    @property
    def states(self) -> list[RequestState]:
        return [RequestState(t.state) for t in self.history] + [self.state]

    def to_record(self) -> RequestRecord:
        return RequestRecord(
            request_id=self.request_id,
            started_at=self._started_at,
            finished_at=datetime.utcnow() if self.finished else None,
            final_state=self.state.value,
            states=list(self.history),
            retrieved_count=self.retrieved_count,
            error=str(self.error) if self.error else "",
        )
