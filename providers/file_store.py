"""File-backed vector store: one JSON snapshot per logical store key."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path

from filelock import FileLock, Timeout
from pydantic import ValidationError

from observability.logger import get_logger
from protocols.errors import StorageError
from providers.memory_store import Change, Entries, MemoryVectorStore, as_vector
from schemas.documents import Document

log = get_logger(__name__)

FORMAT_VERSION = 1


class FileVectorStore(MemoryVectorStore):
    """Vector store persisted to ``{directory}/{key}.store.json``.

    Every write takes ``{key}.store.json.lock``, re-reads the file, applies the
    change to what it found and replaces the file atomically (temp file +
    rename) before the new state becomes visible in memory. Writers in other
    processes, or other instances in this one, therefore never drop each
    other's entries, and a reader never observes a half-written record.
    """

    def __init__(
        self,
        directory: Path | str,
        key: str = "knowledge_bot",
        *,
        lock_timeout: float = 30.0,
    ) -> None:
        super().__init__()
        self.directory = Path(directory)
        self.key = key
        self.path = self.directory / f"{key}.store.json"
        self.lock_timeout = lock_timeout
        self._file_lock = FileLock(f"{self.path}.lock", timeout=lock_timeout)

        self._entries, self.dim = self._read()
        if self._entries:
            log.info("store.loaded", file=str(self.path), entries=len(self._entries), dim=self.dim)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _read(self) -> tuple[Entries, int | None]:
        if not self.path.exists():
            return {}, None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            items = data["entries"]
            dim = data.get("dim")
            entries: Entries = {}
            for item in items:
                doc = Document.model_validate(item)
                if doc.embedding is None:
                    raise StorageError(f"entry {doc.id!r} has no embedding")
                vec = as_vector(doc.id, doc.embedding, dim)
                dim = dim or vec.size
                entries[doc.id] = (doc, vec)
        except StorageError as exc:
            raise StorageError(f"Corrupt vector store {self.path}: {exc}") from exc
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
            raise StorageError(f"Cannot load vector store {self.path}: {exc}") from exc
        return entries, dim

    def _write(self, entries: Entries, dim: int | None) -> None:
        payload = {
            "version": FORMAT_VERSION,
            "key": self.key,
            "dim": dim,
            "entries": [doc.model_dump() for doc, _ in entries.values()],
        }
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{self.key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _apply_locked(self, change: Change) -> tuple[Entries, int | None]:
        self.directory.mkdir(parents=True, exist_ok=True)
        with self._file_lock:
            current, dim = self._read()
            entries, new_dim = change(current, dim)
            if entries is not current:
                self._write(entries, new_dim)
        return entries, new_dim

    async def _apply(self, change: Change) -> Entries:
        try:
            entries, dim = await asyncio.to_thread(self._apply_locked, change)
        except Timeout as exc:
            raise StorageError(
                f"Timed out after {self.lock_timeout}s waiting for {self._file_lock.lock_file}"
            ) from exc
        except OSError as exc:
            log.error("store.save_failed", file=str(self.path), error=str(exc))
            raise StorageError(f"Cannot write vector store {self.path}: {exc}") from exc

        self._entries, self.dim = entries, dim
        log.debug("store.saved", file=str(self.path), entries=len(entries))
        return entries
