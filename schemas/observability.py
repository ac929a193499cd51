"""Observability schemas for provider calls and chat requests."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class LLMCallRecord(BaseModel):
    """Record of a single provider API call for cost and performance tracking."""

    model_config = ConfigDict(protected_namespaces=())

    call_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    operation: str = ""  # "complete", "stream", "embed"
    provider: str = ""  # "anthropic", "openai", "dummy"
    model_id: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float = 0.0
    latency_ms: float = 0.0
    success: bool = True
    error_message: str = ""


class StateTiming(BaseModel):
    state: str
    latency_ms: float = 0.0


class RequestRecord(BaseModel):
    """Summary of one chat request through the RAG state machine."""

    request_id: str = Field(default_factory=lambda: str(uuid4()))
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: datetime | None = None
    final_state: str = ""
    states: list[StateTiming] = Field(default_factory=list)
    retrieved_count: int = 0
    error: str = ""
