"""Builds providers, the vector store and the RAG engine from an AppConfig."""

from __future__ import annotations

from typing import TYPE_CHECKING

from config.settings import (
    AnthropicConfig,
    AppConfig,
    DummyLLMConfig,
    LocalEmbeddingsConfig,
    OpenAIConfig,
    OpenAIEmbeddingsConfig,
)
from pipeline.rag import RAGEngine
from providers.dummy_llm import DummyLLM
from providers.file_store import FileVectorStore
from providers.local_embeddings import LocalEmbeddings

if TYPE_CHECKING:
    from observability.metrics import MetricsCollector
    from protocols.embeddings import EmbeddingProvider
    from protocols.llm import LLMProvider


def build_llm(config: AppConfig, metrics: MetricsCollector | None = None) -> LLMProvider:
    llm = config.llm
    gen = config.generation
    if isinstance(llm, AnthropicConfig):
        from providers.anthropic_llm import AnthropicLLM

        return AnthropicLLM(
            api_key=llm.api_key.get_secret_value(),
            model=llm.model,
            temperature=gen.temperature,
            max_tokens=gen.max_tokens,
            retry_policy=config.retry,
            metrics=metrics,
        )
    if isinstance(llm, OpenAIConfig):
        from providers.openai_llm import OpenAILLM

        return OpenAILLM(
            api_key=llm.api_key.get_secret_value(),
            model=llm.model,
            temperature=gen.temperature,
            max_tokens=gen.max_tokens,
            retry_policy=config.retry,
            metrics=metrics,
        )
    if isinstance(llm, DummyLLMConfig):
        return DummyLLM()
    raise TypeError(f"Unhandled LLM config: {type(llm).__name__}")


def build_embeddings(
    config: AppConfig, metrics: MetricsCollector | None = None,
) -> EmbeddingProvider:
    emb = config.embeddings
    if isinstance(emb, OpenAIEmbeddingsConfig):
        from providers.openai_embeddings import OpenAIEmbeddings

        return OpenAIEmbeddings(
            api_key=emb.api_key.get_secret_value(),
            model=emb.model,
            dim=emb.dim,
            batch_size=emb.batch_size,
            concurrency=config.concurrency,
            retry_policy=config.retry,
            metrics=metrics,
        )
    if isinstance(emb, LocalEmbeddingsConfig):
        return LocalEmbeddings(dim=emb.dim)
    raise TypeError(f"Unhandled embeddings config: {type(emb).__name__}")


def build_store(config: AppConfig) -> FileVectorStore:
    return FileVectorStore(directory=config.store.directory, key=config.store.key)


def build_engine(config: AppConfig, metrics: MetricsCollector | None = None) -> RAGEngine:
    """Compose the RAG engine from its three capabilities."""
    return RAGEngine(
        llm=build_llm(config, metrics),
        embedder=build_embeddings(config, metrics),
        store=build_store(config),
        top_k=config.top_k,
        concurrency=config.concurrency,
        batch_size=config.embed_batch_size,
        prompt_version=config.prompt_version,
    )
