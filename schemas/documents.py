"""Document and retrieval schemas flowing through ingestion and chat."""

from __future__ import annotations

from typing import Union

from pydantic import BaseModel, ConfigDict, Field

MetadataValue = Union[str, int, float, bool]


class Document(BaseModel):
    """A chunk of a knowledge file, the unit of embedding and retrieval."""

    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    metadata: dict[str, MetadataValue] = Field(default_factory=dict)
    embedding: list[float] | None = None

    def with_embedding(self, embedding: list[float]) -> Document:
        return self.model_copy(update={"embedding": list(embedding)})

    @property
    def source(self) -> str:
        return str(self.metadata.get("filename") or self.metadata.get("source") or self.id)


class ScoredDocument(BaseModel):
    """A single result from a vector store query."""

    document: Document
    score: float = 0.0

    @property
    def doc_id(self) -> str:
        return self.document.id


class IngestFailure(BaseModel):
    doc_id: str
    error: str


class IngestReport(BaseModel):
    """Outcome of a bulk ingestion. Partial success is allowed."""

    stored: list[str] = Field(default_factory=list)
    failures: list[IngestFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def merge(self, other: IngestReport) -> IngestReport:
        return IngestReport(
            stored=[*self.stored, *other.stored],
            failures=[*self.failures, *other.failures],
        )
