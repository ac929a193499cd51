"""In-memory vector store with exact cosine similarity search."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import numpy as np

from observability.logger import get_logger
from protocols.errors import StorageError
from schemas.documents import Document, ScoredDocument

log = get_logger(__name__)

Entries = dict[str, tuple[Document, np.ndarray]]
# Maps (current entries, current dim) to the new state; returning the same
# entries object means nothing changed
Change = Callable[[Entries, int | None], tuple[Entries, int | None]]


def as_vector(doc_id: str, vector: list[float], dim: int | None) -> np.ndarray:
    """Validate one stored vector against the store dimension."""
    vec = np.asarray(vector, dtype=np.float32)
    if vec.ndim != 1 or vec.size == 0:
        raise StorageError(f"Vector for {doc_id!r} must be a non-empty 1-D sequence")
    if dim is not None and vec.size != dim:
        raise StorageError(f"Vector for {doc_id!r} has dimension {vec.size}, store expects {dim}")
    return vec


class MemoryVectorStore:
    """Brute-force cosine similarity over numpy arrays. Implements VectorStore protocol.

    Entries are never mutated in place: an upsert of an existing id removes the
    old entry and appends the new one, and every write builds a fresh entry map
    that replaces the old one in a single assignment. Readers therefore always
    see a complete snapshot. Writers are serialised by a lock.
    """

    def __init__(self, dim: int | None = None) -> None:
        self.dim = dim
        self._entries: Entries = {}
        self._lock = asyncio.Lock()

    async def upsert(self, entries: list[tuple[Document, list[float]]]) -> None:
        if not entries:
            return

        def change(current: Entries, dim: int | None) -> tuple[Entries, int | None]:
            prepared: list[tuple[Document, np.ndarray]] = []
            for doc, vector in entries:
                vec = as_vector(doc.id, vector, dim)
                dim = dim or vec.size
                prepared.append((doc.with_embedding(vec.tolist()), vec))

            updated: Entries = dict(current)
            for doc, vec in prepared:
                updated.pop(doc.id, None)
                updated[doc.id] = (doc, vec)
            return updated, dim

        async with self._lock:
            updated = await self._apply(change)
        log.info("store.upsert", count=len(entries), total=len(updated))

    async def query(self, vector: list[float], k: int = 5) -> list[ScoredDocument]:
        snapshot = self._entries
        if k <= 0 or not snapshot:
            return []

        query = np.asarray(vector, dtype=np.float32)
        if query.ndim != 1 or query.size != self.dim:
            raise StorageError(
                f"Query vector has dimension {query.size}, store expects {self.dim}"
            )

        docs = [doc for doc, _ in snapshot.values()]
        mat = np.stack([vec for _, vec in snapshot.values()])
        norms = np.linalg.norm(mat, axis=1) * np.linalg.norm(query)
        dots = mat @ query
        sims = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        # Stable sort keeps insertion order among equal scores
        top = np.argsort(-sims, kind="stable")[:k]
        return [ScoredDocument(document=docs[i], score=float(sims[i])) for i in top]

    async def delete(self, doc_id: str) -> None:
        def change(current: Entries, dim: int | None) -> tuple[Entries, int | None]:
            if doc_id not in current:
                return current, dim
            updated: Entries = dict(current)
            del updated[doc_id]
            return updated, dim

        async with self._lock:
            updated = await self._apply(change)
        log.info("store.delete", doc_id=doc_id, total=len(updated))

    async def count(self) -> int:
        return len(self._entries)

    async def ids(self) -> list[str]:
        return list(self._entries)

    async def _apply(self, change: Change) -> Entries:
        """Run ``change`` against the current state and make the result visible.

        Subclasses that persist override this to apply the change to the
        persisted state instead.
        """
        entries, dim = change(self._entries, self.dim)
        self._entries, self.dim = entries, dim
        return entries
