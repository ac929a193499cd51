"""Tests for RAG engine."""

from __future__ import annotations

import pytest

from observability.tracer import RequestState
from pipeline.rag import RAGEngine
from protocols.errors import IngestError, ProviderError
from providers.dummy_llm import NO_ANSWER, DummyLLM
from providers.local_embeddings import LocalEmbeddings
from providers.memory_store import MemoryVectorStore
from schemas.documents import Document
from schemas.messages import Message, Role


class FailingEmbedder(LocalEmbeddings):
    """Batch calls always fail; single calls fail for content containing 'poison'."""

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise ProviderError("batch endpoint unavailable", provider="fake", transient=True)

    async def embed(self, text: str) -> list[float]:
        if "poison" in text:
            raise ProviderError("cannot embed this one", provider="fake")
        return await super().embed(text)


class RecordingEmbedder(LocalEmbeddings):
    """Records every call; any batch holding a text with 'reject' fails with ``batch_error``."""

    def __init__(self, batch_error: ProviderError, dim: int = 256) -> None:
        super().__init__(dim=dim)
        self.batch_error = batch_error
        self.batch_calls: list[list[str]] = []
        self.single_calls: list[str] = []

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls.append(list(texts))
        if any("reject" in t for t in texts):
            raise self.batch_error
        return await super().embed_batch(texts)

    async def embed(self, text: str) -> list[float]:
        self.single_calls.append(text)
        if "reject" in text:
            raise ProviderError("input rejected", provider="fake", input_error=True)
        return await super().embed(text)


class BrokenLLM(DummyLLM):
    async def complete(self, messages: list[Message]) -> str:
        raise ProviderError("anthropic: 401 invalid x-api-key", provider="anthropic")


async def test_add_documents_and_retrieve(rag_engine: RAGEngine, sample_documents):
    report = await rag_engine.add_documents(sample_documents)

    assert report.ok
    assert report.stored == [d.id for d in sample_documents]

    results = await rag_engine.retrieve("vector store embeddings similar documents")
    assert len(results) == 3
    assert results[0].doc_id == "rag.md:0"


async def test_retrieve_empty_store(rag_engine: RAGEngine):
    results = await rag_engine.retrieve("anything")
    assert results == []


async def test_stored_documents_are_retrieved_by_their_own_vector(
    rag_engine: RAGEngine, vector_store: MemoryVectorStore, sample_documents,
):
    await rag_engine.add_documents(sample_documents)
    embeddings = await rag_engine.embedder.embed_batch([d.content for d in sample_documents])

    for doc, vector in zip(sample_documents, embeddings):
        results = await vector_store.query(vector, k=1)
        assert results[0].doc_id == doc.id
        assert results[0].score == pytest.approx(1.0)


async def test_chat_answers_from_retrieved_context(rag_engine: RAGEngine, sample_documents):
    await rag_engine.add_documents(sample_documents)

    reply = await rag_engine.chat("How do I install the package with composer?")

    assert reply.role is Role.ASSISTANT
    assert reply.content.startswith("According to install.md")
    assert rag_engine.last_request.states == [
        RequestState.RECEIVED,
        RequestState.EMBEDDING,
        RequestState.RETRIEVING,
        RequestState.COMPOSING,
        RequestState.GENERATING,
        RequestState.DONE,
    ]
    assert rag_engine.last_request.retrieved_count == 3


async def test_chat_with_empty_store_still_answers(rag_engine: RAGEngine):
    reply = await rag_engine.chat("Is anybody there?")

    assert reply.content == NO_ANSWER
    assert rag_engine.last_request.state is RequestState.DONE
    assert rag_engine.last_request.retrieved_count == 0


async def test_prompt_order_system_context_history_question(
    rag_engine: RAGEngine, dummy_llm: DummyLLM, sample_documents,
):
    await rag_engine.add_documents(sample_documents)
    first = await rag_engine.chat("What does the vector store do?")
    await rag_engine.chat("And how do I install it?")

    sent = dummy_llm.calls[-1]
    assert [m.role for m in sent] == [
        Role.SYSTEM, Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.USER,
    ]
    assert sent[0].content == rag_engine.system_prompt
    assert "[1] " in sent[1].content
    assert sent[2].content == "What does the vector store do?"
    assert sent[3] == first
    assert sent[4].content == "And how do I install it?"


async def test_history_is_append_only_and_resettable(rag_engine: RAGEngine):
    await rag_engine.chat("first question")
    await rag_engine.chat("second question")

    history = rag_engine.history
    assert [m.content for m in history[::2]] == ["first question", "second question"]
    assert len(history) == 4

    history.clear()
    assert len(rag_engine.history) == 4

    rag_engine.reset()
    assert rag_engine.history == []


async def test_failed_generation_leaves_history_untouched(embedder, vector_store):
    engine = RAGEngine(llm=BrokenLLM(), embedder=embedder, store=vector_store)

    with pytest.raises(ProviderError, match="invalid x-api-key"):
        await engine.chat("hello?")

    assert engine.history == []
    assert engine.last_request.state is RequestState.FAILED
    assert engine.last_request.states[-2] is RequestState.GENERATING


async def test_failed_embedding_fails_request(dummy_llm, vector_store):
    engine = RAGEngine(llm=dummy_llm, embedder=FailingEmbedder(dim=256), store=vector_store)

    with pytest.raises(ProviderError):
        await engine.chat("poison question")

    assert engine.last_request.states[-2:] == [RequestState.EMBEDDING, RequestState.FAILED]
    assert dummy_llm.calls == []


async def test_stream_chat_yields_answer_and_records_history(
    rag_engine: RAGEngine, sample_documents,
):
    await rag_engine.add_documents(sample_documents)

    parts = [delta async for delta in rag_engine.stream_chat("Tell me about agents")]

    assert len(parts) > 1
    assert rag_engine.history[-1].content == "".join(parts)
    assert rag_engine.last_request.state is RequestState.DONE


async def test_add_documents_collects_failures_without_blocking(dummy_llm, vector_store):
    engine = RAGEngine(llm=dummy_llm, embedder=FailingEmbedder(dim=256), store=vector_store)
    docs = [
        Document(id="a", content="first healthy chunk"),
        Document(id="b", content="a poison chunk"),
        Document(id="c", content="second healthy chunk"),
    ]

    report = await engine.add_documents(docs)

    assert report.stored == ["a", "c"]
    assert [f.doc_id for f in report.failures] == ["b"]
    assert not report.ok
    assert await vector_store.count() == 2


async def test_add_documents_strict_raises_after_attempting_all(dummy_llm, vector_store):
    engine = RAGEngine(llm=dummy_llm, embedder=FailingEmbedder(dim=256), store=vector_store)
    docs = [
        Document(id="a", content="a poison chunk"),
        Document(id="b", content="healthy chunk"),
    ]

    with pytest.raises(IngestError) as exc:
        await engine.add_documents(docs, strict=True)

    assert exc.value.report.stored == ["b"]
    assert await vector_store.count() == 1


async def test_add_documents_keeps_existing_embeddings(rag_engine: RAGEngine, vector_store):
    doc = Document(id="pre", content="already embedded", embedding=[0.0] * 255 + [1.0])

    report = await rag_engine.add_documents([doc])

    assert report.stored == ["pre"]
    results = await vector_store.query([0.0] * 255 + [1.0], k=1)
    assert results[0].doc_id == "pre"
    assert results[0].score == pytest.approx(1.0)


async def test_dimension_mismatch_is_reported_per_document(rag_engine: RAGEngine):
    docs = [
        Document(id="ok", content="fits", embedding=[1.0] * 256),
        Document(id="short", content="wrong size", embedding=[1.0] * 8),
    ]

    report = await rag_engine.add_documents(docs)

    assert report.stored == ["ok"]
    assert report.failures[0].doc_id == "short"
    assert "dimension" in report.failures[0].error


async def test_reingesting_same_documents_does_not_grow_store(
    rag_engine: RAGEngine, vector_store: MemoryVectorStore, sample_documents,
):
    await rag_engine.add_documents(sample_documents)
    await rag_engine.add_documents(sample_documents)

    assert await vector_store.count() == len(sample_documents)


async def test_chat_rejects_non_user_message(rag_engine: RAGEngine):
    with pytest.raises(ValueError):
        await rag_engine.chat(Message.system("not a question"))


async def test_non_transient_batch_failure_is_not_retried_per_document(dummy_llm, vector_store):
    auth_error = ProviderError("openai: 401 invalid api key", provider="openai")
    embedder = RecordingEmbedder(auth_error)
    engine = RAGEngine(llm=dummy_llm, embedder=embedder, store=vector_store)
    docs = [Document(id=f"d{i}", content=f"reject chunk {i}") for i in range(5)]

    report = await engine.add_documents(docs)

    assert embedder.single_calls == []
    assert len(embedder.batch_calls) == 1
    assert [f.doc_id for f in report.failures] == [d.id for d in docs]
    assert all("invalid api key" in f.error for f in report.failures)
    assert await vector_store.count() == 0


async def test_input_error_falls_back_only_for_the_failed_group(dummy_llm, vector_store):
    bad_input = ProviderError("openai: 400 invalid input", provider="openai", input_error=True)
    embedder = RecordingEmbedder(bad_input)
    engine = RAGEngine(llm=dummy_llm, embedder=embedder, store=vector_store, batch_size=2)
    docs = [
        Document(id="a", content="healthy one"),
        Document(id="b", content="healthy two"),
        Document(id="c", content="healthy three"),
        Document(id="d", content="reject this"),
    ]

    report = await engine.add_documents(docs)

    assert sorted(len(batch) for batch in embedder.batch_calls) == [2, 2]
    # Only the group holding the rejected text is resent one by one
    assert sorted(embedder.single_calls) == ["healthy three", "reject this"]
    assert report.stored == ["a", "b", "c"]
    assert [f.doc_id for f in report.failures] == ["d"]


async def test_prune_source_removes_chunks_beyond_keep(rag_engine: RAGEngine, vector_store):
    docs = [
        Document(id=f"guide.md:{i}", content=f"guide section {i}", metadata={"filename": "guide.md"})
        for i in range(4)
    ]
    docs.append(Document(id="other.md:3", content="unrelated", metadata={"filename": "other.md"}))
    docs.append(Document(id="manual", content="added by hand"))
    await rag_engine.add_documents(docs)

    removed = await rag_engine.prune_source("guide.md", keep=2)

    assert sorted(removed) == ["guide.md:2", "guide.md:3"]
    assert sorted(await vector_store.ids()) == ["guide.md:0", "guide.md:1", "manual", "other.md:3"]

    assert sorted(await rag_engine.prune_source("guide.md")) == ["guide.md:0", "guide.md:1"]
    assert await rag_engine.prune_source("guide.md") == []
