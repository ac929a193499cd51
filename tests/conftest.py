"""Shared fixtures for tests, all using offline providers."""

from __future__ import annotations

from pathlib import Path

import pytest

from config.settings import Settings
from pipeline.rag import RAGEngine
from providers.dummy_llm import DummyLLM
from providers.local_embeddings import LocalEmbeddings
from providers.memory_store import MemoryVectorStore
from schemas.documents import Document


@pytest.fixture
def dummy_llm() -> DummyLLM:
    return DummyLLM()


@pytest.fixture
def embedder() -> LocalEmbeddings:
    return LocalEmbeddings(dim=256)


@pytest.fixture
def vector_store() -> MemoryVectorStore:
    return MemoryVectorStore()


@pytest.fixture
def rag_engine(dummy_llm, embedder, vector_store) -> RAGEngine:
    return RAGEngine(llm=dummy_llm, embedder=embedder, store=vector_store, top_k=3)


@pytest.fixture
def sample_documents() -> list[Document]:
    return [
        Document(
            id="agents.md:0",
            content="Agents are created by extending the Agent class and defining a provider.",
            metadata={"filename": "agents.md", "chunk_index": 0},
        ),
        Document(
            id="rag.md:0",
            content="The vector store persists embeddings and retrieves similar documents.",
            metadata={"filename": "rag.md", "chunk_index": 0},
        ),
        Document(
            id="install.md:0",
            content="Install the package with composer and copy the example env file.",
            metadata={"filename": "install.md", "chunk_index": 0},
        ),
    ]


@pytest.fixture
def knowledge_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "knowledge"
    directory.mkdir()
    (directory / "overview.md").write_text(
        "# Overview\n\nKnowledge Bot answers questions about the team handbook.\n\n"
        "Deployments happen every Tuesday after the release review.",
        encoding="utf-8",
    )
    (directory / "faq.txt").write_text(
        "Vacation requests go through the HR portal at least two weeks in advance.",
        encoding="utf-8",
    )
    (directory / "image.png").write_bytes(b"\x89PNG\r\n")
    return directory


@pytest.fixture
def offline_settings(tmp_path: Path, knowledge_dir: Path) -> Settings:
    """Settings wired to offline providers and a temporary store."""
    return Settings(
        _env_file=None,
        ai_provider="dummy",
        embeddings_provider="local",
        embedding_dim=64,
        vector_store_dir=str(tmp_path / "vectors"),
        knowledge_dir=str(knowledge_dir),
        chunk_max_tokens=64,
        chunk_overlap_tokens=8,
        log_level="WARNING",
    )
