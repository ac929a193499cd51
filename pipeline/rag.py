"""RAG engine — retrieves knowledge-base context and asks the LLM to answer with it."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from config.prompts.registry import format_prompt, load_prompt
from observability.logger import get_logger
from observability.tracer import RequestState, RequestTracer
from pipeline.loader import parse_chunk_id
from protocols.errors import IngestError, KnowledgeBotError, ProviderError, StorageError
from schemas.documents import Document, IngestFailure, IngestReport, ScoredDocument
from schemas.messages import Message, Role

if TYPE_CHECKING:
    from protocols.embeddings import EmbeddingProvider
    from protocols.llm import LLMProvider
    from protocols.vector_store import VectorStore

log = get_logger(__name__)


class RAGEngine:
    """Retrieval-Augmented Generation engine.

    The three capabilities (LLM, embeddings, vector store) are injected by the
    caller. Each chat request runs Received → Embedding → Retrieving →
    Composing → Generating → Done; any failure ends it in Failed and the error
    propagates unchanged.

    The prompt sent to the LLM is always ordered: system instructions,
    retrieved context, prior turns, current user message.
    """

    def __init__(
        self,
        llm: LLMProvider,
        embedder: EmbeddingProvider,
        store: VectorStore,
        *,
        top_k: int = 4,
        concurrency: int = 4,
        batch_size: int = 64,
        prompt_version: str = "v1",
        system_prompt: str | None = None,
        max_chars_per_doc: int = 1500,
    ) -> None:
        if top_k < 1 or concurrency < 1 or batch_size < 1:
            raise ValueError("top_k, concurrency and batch_size must be positive")
        self.llm = llm
        self.embedder = embedder
        self.store = store
        self.top_k = top_k
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.prompt_version = prompt_version
        self.system_prompt = system_prompt or load_prompt("system", prompt_version)
        self.max_chars_per_doc = max_chars_per_doc
        self._history: list[Message] = []
        self.last_request: RequestTracer | None = None

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    def reset(self) -> None:
        """Start a new conversation. Stored documents are untouched."""
        self._history.clear()
        log.info("rag.history.reset")

    # ------------------------------------------------------------------
    # Query path
    # ------------------------------------------------------------------

    async def retrieve(self, query: str) -> list[ScoredDocument]:
        """Retrieve the documents most relevant to ``query``."""
        embedding = await self.embedder.embed(query)
        return await self._search(query, embedding)

    async def _search(self, query: str, embedding: list[float]) -> list[ScoredDocument]:
        results = await self.store.query(embedding, k=self.top_k)
        log.info(
            "rag.search",
            query=query[:80],
            results_count=len(results),
            top_score=round(results[0].score, 4) if results else 0.0,
        )
        return results

    def format_context(self, results: list[ScoredDocument]) -> str:
        """Render retrieved documents as a numbered context block."""
        if not results:
            return load_prompt("no_context", self.prompt_version)

        sections: list[str] = []
        for i, r in enumerate(results, 1):
            content = r.document.content[: self.max_chars_per_doc]
            if len(r.document.content) > self.max_chars_per_doc:
                content += "..."
            sections.append(f"[{i}] {r.document.source} (score: {r.score:.3f})\n{content}")

        return format_prompt("context", self.prompt_version, documents="\n\n".join(sections))

    def compose(self, question: Message, results: list[ScoredDocument]) -> list[Message]:
        return [
            Message.system(self.system_prompt),
            Message.system(self.format_context(results)),
            *self._history,
            question,
        ]

    async def _prepare(self, question: Message, tracer: RequestTracer) -> list[Message]:
        tracer.advance(RequestState.EMBEDDING)
        embedding = await self.embedder.embed(question.content)

        tracer.advance(RequestState.RETRIEVING)
        results = await self._search(question.content, embedding)
        tracer.retrieved_count = len(results)

        tracer.advance(RequestState.COMPOSING)
        return self.compose(question, results)

    async def chat(self, message: str | Message) -> Message:
        """Answer one user message, appending both turns to the history on success."""
        question = _as_user_message(message)
        tracer = RequestTracer()
        self.last_request = tracer

        try:
            messages = await self._prepare(question, tracer)
            tracer.advance(RequestState.GENERATING)
            content = await self.llm.complete(messages)
        except Exception as e:
            tracer.fail(e)
            raise

        return self._finish(question, content, tracer)

    async def stream_chat(self, message: str | Message) -> AsyncIterator[str]:
        """Like ``chat`` but yields the answer as it is generated."""
        question = _as_user_message(message)
        tracer = RequestTracer()
        self.last_request = tracer

        parts: list[str] = []
        try:
            messages = await self._prepare(question, tracer)
            tracer.advance(RequestState.GENERATING)
            async for delta in self.llm.stream(messages):
                parts.append(delta)
                yield delta
        except Exception as e:
            tracer.fail(e)
            raise

        self._finish(question, "".join(parts), tracer)

    def _finish(self, question: Message, content: str, tracer: RequestTracer) -> Message:
        reply = Message.assistant(content)
        tracer.advance(RequestState.DONE)
        self._history.extend([question, reply])
        log.info(
            "rag.chat.done",
            request_id=tracer.request_id,
            retrieved=tracer.retrieved_count,
            history_len=len(self._history),
            answer_len=len(content),
        )
        return reply

    # ------------------------------------------------------------------
    # Ingestion path
    # ------------------------------------------------------------------

    async def add_documents(
        self,
        documents: list[Document],
        *,
        strict: bool = False,
    ) -> IngestReport:
        """Embed (where needed) and store documents.

        One document failing to embed or store never blocks the others; all
        failures are collected in the returned report. With ``strict=True`` an
        IngestError carrying the report is raised once everything was attempted.
        """
        embedded, failures = await self._embed_missing(documents)
        stored, store_failures = await self._store(embedded)
        report = IngestReport(stored=stored, failures=failures + store_failures)

        log.info(
            "rag.ingest.done",
            requested=len(documents),
            stored=len(report.stored),
            failed=len(report.failures),
        )
        if strict and not report.ok:
            raise IngestError(report)
        return report

    async def _embed_missing(
        self, documents: list[Document],
    ) -> tuple[list[Document], list[IngestFailure]]:
        pending = [d for d in documents if d.embedding is None]
        if not pending:
            return list(documents), []

        semaphore = asyncio.Semaphore(self.concurrency)
        groups = [
            pending[i : i + self.batch_size] for i in range(0, len(pending), self.batch_size)
        ]
        results = await asyncio.gather(*(self._embed_group(g, semaphore) for g in groups))

        vectors: dict[str, list[float]] = {}
        failures: list[IngestFailure] = []
        for group_vectors, group_failures in results:
            vectors.update(group_vectors)
            failures.extend(group_failures)

        embedded: list[Document] = []
        for doc in documents:
            if doc.embedding is not None:
                embedded.append(doc)
            elif doc.id in vectors:
                embedded.append(doc.with_embedding(vectors[doc.id]))
        return embedded, failures

    async def _embed_group(
        self, group: list[Document], semaphore: asyncio.Semaphore,
    ) -> tuple[dict[str, list[float]], list[IngestFailure]]:
        try:
            async with semaphore:
                batch = await self.embedder.embed_batch([d.content for d in group])
        except KnowledgeBotError as e:
            if not _retry_alone(e):
                # Same failure for every input (bad key, quota); one attempt per group is enough
                log.warning("rag.ingest.batch_failed", count=len(group), error=str(e), fallback=False)
                return {}, [IngestFailure(doc_id=d.id, error=str(e)) for d in group]
            # Retry one by one so a single bad document cannot sink the group
            log.warning("rag.ingest.batch_failed", count=len(group), error=str(e), fallback=True)
        else:
            return {d.id: v for d, v in zip(group, batch)}, []

        async def embed_one(doc: Document) -> list[float]:
            async with semaphore:
                return await self.embedder.embed(doc.content)

        outcomes = await asyncio.gather(*(embed_one(d) for d in group), return_exceptions=True)
        vectors: dict[str, list[float]] = {}
        failures: list[IngestFailure] = []
        for doc, outcome in zip(group, outcomes):
            if isinstance(outcome, KnowledgeBotError):
                log.warning("rag.ingest.embed_failed", doc_id=doc.id, error=str(outcome))
                failures.append(IngestFailure(doc_id=doc.id, error=str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                vectors[doc.id] = outcome
        return vectors, failures

    async def _store(
        self, documents: list[Document],
    ) -> tuple[list[str], list[IngestFailure]]:
        if not documents:
            return [], []
        entries = [(d, d.embedding or []) for d in documents]
        try:
            await self.store.upsert(entries)
            return [d.id for d in documents], []
        except StorageError as e:
            log.warning("rag.ingest.upsert_failed", count=len(entries), error=str(e))

        stored: list[str] = []
        failures: list[IngestFailure] = []
        for doc, vector in entries:
            try:
                await self.store.upsert([(doc, vector)])
                stored.append(doc.id)
            except StorageError as e:
                failures.append(IngestFailure(doc_id=doc.id, error=str(e)))
        return stored, failures

    async def prune_source(self, filename: str, keep: int = 0) -> list[str]:
        """Delete stored chunks of ``filename`` whose chunk index is ``keep`` or higher.

        Called after re-chunking a file so chunks it no longer produces do not
        linger in the store; ``keep=0`` removes the file entirely.
        """
        stale: list[str] = []
        for doc_id in await self.store.ids():
            parsed = parse_chunk_id(doc_id)
            if parsed and parsed[0] == filename and parsed[1] >= keep:
                stale.append(doc_id)
        for doc_id in stale:
            await self.store.delete(doc_id)
        if stale:
            log.info("rag.ingest.pruned", filename=filename, removed=len(stale))
        return stale


def _retry_alone(exc: KnowledgeBotError) -> bool:
    """Whether a failed batch is worth resending one input at a time."""
    if isinstance(exc, ProviderError):
        return exc.transient or exc.input_error
    return True


def _as_user_message(message: str | Message) -> Message:
    if isinstance(message, Message):
        if message.role is not Role.USER:
            raise ValueError(f"chat expects a user message, got {message.role.value}")
        return message
    return Message.user(message)
