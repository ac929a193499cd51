"""Knowledge file loading. Reads markdown/text files and splits them into token-bounded chunks."""

from __future__ import annotations

from pathlib import Path

import tiktoken

from observability.logger import get_logger
from protocols.errors import UnreadableSource
from schemas.documents import Document

log = get_logger(__name__)

SUPPORTED_EXTENSIONS: tuple[str, ...] = (".md", ".txt")

# Same encoding as the OpenAI chat and embedding models
DEFAULT_ENCODING = "cl100k_base"


def discover_files(directory: Path | str) -> list[Path]:
    """Return the supported knowledge files directly inside ``directory``, sorted by name."""
    base = Path(directory)
    return sorted(
        p for p in base.iterdir()
        if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
    )


def chunk_id(filename: str, index: int) -> str:
    return f"{filename}:{index}"


def parse_chunk_id(doc_id: str) -> tuple[str, int] | None:
    """Inverse of ``chunk_id``; None for ids the loader did not produce."""
    filename, sep, index = doc_id.rpartition(":")
    if not sep or not filename or not index.isdigit():
        return None
    return filename, int(index)


class FileDataLoader:
    """Splits a text file into overlapping windows of at most ``max_tokens`` tokens.

    Token windows are mapped back to character offsets, so each chunk is the
    exact (whitespace-trimmed) slice of the source and markdown formatting
    survives. Text without spaces (CJK, long URLs, base64) is bounded the same
    way as prose. Chunk ids are ``"{filename}:{index}"`` and therefore stable
    across re-ingestion of an unchanged file.
    """

    def __init__(
        self,
        max_tokens: int = 300,
        overlap_tokens: int = 30,
        encoding_name: str = DEFAULT_ENCODING,
    ) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        if not 0 <= overlap_tokens < max_tokens:
            raise ValueError("overlap_tokens must be >= 0 and smaller than max_tokens")
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens
        self.encoding = tiktoken.get_encoding(encoding_name)

    def load(self, path: Path | str) -> list[Document]:
        path = Path(path)
        text = self._read(path)
        documents = self.split(text, source=path)
        log.info("loader.loaded", file=path.name, chunks=len(documents), chars=len(text))
        return documents

    def count_tokens(self, text: str) -> int:
        return len(self.encoding.encode(text, disallowed_special=()))

    def split(self, text: str, *, source: Path) -> list[Document]:
        tokens = self.encoding.encode(text, disallowed_special=())
        if not tokens:
            return []

        # offsets[i] is the character where token i starts; a token that begins
        # inside a multi-byte character maps to that character
        _, offsets = self.encoding.decode_with_offsets(tokens)
        bounds = [*offsets, len(text)]

        step = self.max_tokens - self.overlap_tokens
        documents: list[Document] = []
        start = 0
        while True:
            end = min(start + self.max_tokens, len(tokens))
            begin_char = bounds[start]
            raw = text[begin_char : bounds[end]]
            content = raw.strip()
            if content:
                offset = begin_char + len(raw) - len(raw.lstrip())
                index = len(documents)
                documents.append(
                    Document(
                        id=chunk_id(source.name, index),
                        content=content,
                        metadata={
                            "source": str(source.resolve()),
                            "filename": source.name,
                            "chunk_index": index,
                            "offset": offset,
                            "token_count": end - start,
                        },
                    )
                )
            if end >= len(tokens):
                break
            start += step
        return documents

    @staticmethod
    def _read(path: Path) -> str:
        if not path.exists():
            raise UnreadableSource(path, "file does not exist")
        if not path.is_file():
            raise UnreadableSource(path, "not a regular file")
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise UnreadableSource(path, f"not valid UTF-8 text ({e.reason})") from e
        except OSError as e:
            raise UnreadableSource(path, e.strerror or str(e)) from e
