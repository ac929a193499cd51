"""Vector store protocol for RAG."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from schemas.documents import Document, ScoredDocument


@runtime_checkable
class VectorStore(Protocol):
    """Any class that can store document vectors and search them by similarity."""

    async def upsert(self, entries: list[tuple[Document, list[float]]]) -> None: ...

    async def query(self, vector: list[float], k: int = 5) -> list[ScoredDocument]: ...

    async def delete(self, doc_id: str) -> None: ...

    async def count(self) -> int: ...

    async def ids(self) -> list[str]: ...
