"""Error taxonomy shared by loaders, providers, stores and the RAG engine."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from schemas.documents import IngestReport


class KnowledgeBotError(Exception):
    """Base class for every error raised by this project."""


class UnreadableSource(KnowledgeBotError):
    """An ingestion path is missing, is not a file, or is not decodable text."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Cannot read {self.path}: {reason}")


class ConfigurationError(KnowledgeBotError):
    """Invalid configuration. Always fatal, never retried."""


class UnsupportedProvider(ConfigurationError):
    def __init__(self, setting: str, value: str, supported: Iterable[str]) -> None:
        self.setting = setting
        self.value = value
        self.supported = tuple(supported)
        super().__init__(
            f"Unsupported {setting}: {value!r}. "
            f"Supported providers: {', '.join(self.supported)}"
        )


class MissingConfiguration(ConfigurationError):
    def __init__(self, key: str, needed_by: str) -> None:
        self.key = key
        self.needed_by = needed_by
        super().__init__(f"{key} is required when using {needed_by}")


class ProviderError(KnowledgeBotError):
    """A remote LLM or embeddings call failed.

    ``transient`` marks failures worth retrying (timeouts, network errors,
    rate limits, 5xx). Authentication and malformed requests are not.
    ``input_error`` marks a request rejected because of its content (400, 422),
    where resending the inputs one at a time can isolate the bad one.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str = "unknown",
        transient: bool = False,
        input_error: bool = False,
    ) -> None:
        self.provider = provider
        self.transient = transient
        self.input_error = input_error
        super().__init__(message)


class StorageError(KnowledgeBotError):
    """Vector store read/write failure, including vector dimension mismatch."""


class IngestError(KnowledgeBotError):
    """An ingestion batch finished with at least one failed document."""

    def __init__(self, report: IngestReport) -> None:
        self.report = report
        super().__init__(
            f"{len(report.failures)} document(s) failed to ingest, "
            f"{len(report.stored)} stored"
        )
