"""Environment-driven configuration using Pydantic Settings.

``Settings`` is the raw key/value surface (env vars / .env). ``load_config``
turns it into an immutable ``AppConfig`` in one step, validating provider
selection and required keys eagerly so misconfiguration fails at startup.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.prompts.registry import check_version
from protocols.errors import ConfigurationError, MissingConfiguration, UnsupportedProvider
from providers.retry import RetryPolicy

LLM_PROVIDERS = ("openai", "anthropic", "dummy")
EMBEDDINGS_PROVIDERS = ("openai", "local")


class Settings(BaseSettings):
    """All configuration comes from environment variables / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- LLM ---
    ai_provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    openai_api_key: str = ""
    openai_model: str = "gpt-4-turbo-preview"
    llm_temperature: float = 0.0
    llm_max_tokens: int = 1024

    # --- Embeddings ---
    embeddings_provider: str = "openai"
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_dim: int | None = None
    embedding_batch_size: int = 64

    # --- Vector store ---
    vector_store_dir: str = "storage/vectors"
    vector_store_key: str = "knowledge_bot"

    # --- Ingestion ---
    knowledge_dir: str = "knowledge"
    chunk_max_tokens: int = 300
    chunk_overlap_tokens: int = 30
    ingest_concurrency: int = 4

    # --- Retrieval / chat ---
    rag_top_k: int = 4
    chat_stream: bool = False
    prompt_version: str = "v1"

    # --- Provider calls ---
    provider_timeout_seconds: float = 30.0
    provider_retry_attempts: int = 3

    # --- Observability ---
    log_level: str = "WARNING"
    log_format: Literal["json", "console"] = "console"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())


class AnthropicConfig(_Frozen):
    kind: Literal["anthropic"] = "anthropic"
    api_key: SecretStr
    model: str


class OpenAIConfig(_Frozen):
    kind: Literal["openai"] = "openai"
    api_key: SecretStr
    model: str


class DummyLLMConfig(_Frozen):
    kind: Literal["dummy"] = "dummy"


LLMConfig = Annotated[
    Union[AnthropicConfig, OpenAIConfig, DummyLLMConfig],
    Field(discriminator="kind"),
]


class OpenAIEmbeddingsConfig(_Frozen):
    kind: Literal["openai"] = "openai"
    api_key: SecretStr
    model: str
    dim: int | None = None
    batch_size: int = Field(default=64, ge=1)


class LocalEmbeddingsConfig(_Frozen):
    kind: Literal["local"] = "local"
    dim: int = Field(default=256, ge=1)


EmbeddingsConfig = Annotated[
    Union[OpenAIEmbeddingsConfig, LocalEmbeddingsConfig],
    Field(discriminator="kind"),
]


class StoreConfig(_Frozen):
    directory: Path
    key: str = "knowledge_bot"


class ChunkingConfig(_Frozen):
    max_tokens: int = Field(default=300, ge=1)
    overlap_tokens: int = Field(default=30, ge=0)


class GenerationConfig(_Frozen):
    temperature: float = 0.0
    max_tokens: int = Field(default=1024, ge=1)
    stream: bool = False


class AppConfig(_Frozen):
    """Everything the components need, resolved once and passed explicitly."""

    llm: LLMConfig
    embeddings: EmbeddingsConfig
    store: StoreConfig
    chunking: ChunkingConfig = ChunkingConfig()
    generation: GenerationConfig = GenerationConfig()
    retry: RetryPolicy = RetryPolicy()
    top_k: int = Field(default=4, ge=1)
    concurrency: int = Field(default=4, ge=1)
    embed_batch_size: int = Field(default=64, ge=1)
    knowledge_dir: Path = Path("knowledge")
    prompt_version: str = "v1"


def _require(value: str, key: str, needed_by: str) -> SecretStr:
    if not value.strip():
        raise MissingConfiguration(key, needed_by)
    return SecretStr(value.strip())


def _llm_config(settings: Settings) -> LLMConfig:
    provider = settings.ai_provider.strip().lower()
    if provider == "anthropic":
        return AnthropicConfig(
            api_key=_require(settings.anthropic_api_key, "ANTHROPIC_API_KEY", "AI_PROVIDER=anthropic"),
            model=settings.anthropic_model,
        )
    if provider == "openai":
        return OpenAIConfig(
            api_key=_require(settings.openai_api_key, "OPENAI_API_KEY", "AI_PROVIDER=openai"),
            model=settings.openai_model,
        )
    if provider == "dummy":
        return DummyLLMConfig()
    raise UnsupportedProvider("AI_PROVIDER", settings.ai_provider, LLM_PROVIDERS)


def _embeddings_config(settings: Settings) -> EmbeddingsConfig:
    provider = settings.embeddings_provider.strip().lower()
    if provider == "openai":
        return OpenAIEmbeddingsConfig(
            api_key=_require(
                settings.openai_api_key, "OPENAI_API_KEY", "EMBEDDINGS_PROVIDER=openai",
            ),
            model=settings.openai_embedding_model,
            dim=settings.embedding_dim,
            batch_size=settings.embedding_batch_size,
        )
    if provider == "local":
        if settings.embedding_dim is None:
            return LocalEmbeddingsConfig()
        return LocalEmbeddingsConfig(dim=settings.embedding_dim)
    raise UnsupportedProvider("EMBEDDINGS_PROVIDER", settings.embeddings_provider, EMBEDDINGS_PROVIDERS)


def load_config(settings: Settings | None = None) -> AppConfig:
    """Resolve settings into an immutable AppConfig.

    Raises:
        UnsupportedProvider: AI_PROVIDER or EMBEDDINGS_PROVIDER is not a known value.
        MissingConfiguration: the selected provider's API key is empty.
        ConfigurationError: PROMPT_VERSION names no complete prompt set, or a
            numeric setting is out of range.
    """
    settings = settings or get_settings()

    if settings.chunk_overlap_tokens >= settings.chunk_max_tokens:
        raise ConfigurationError("CHUNK_OVERLAP_TOKENS must be smaller than CHUNK_MAX_TOKENS")
    check_version(settings.prompt_version)

    try:
        return _build(settings)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {_describe(e)}") from e


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'value'}: {err['msg']}"
        for err in exc.errors()
    )


def _build(settings: Settings) -> AppConfig:
    return AppConfig(
        llm=_llm_config(settings),
        embeddings=_embeddings_config(settings),
        store=StoreConfig(
            directory=Path(settings.vector_store_dir),
            key=settings.vector_store_key,
        ),
        chunking=ChunkingConfig(
            max_tokens=settings.chunk_max_tokens,
            overlap_tokens=settings.chunk_overlap_tokens,
        ),
        generation=GenerationConfig(
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            stream=settings.chat_stream,
        ),
        retry=RetryPolicy(
            attempts=settings.provider_retry_attempts,
            timeout=settings.provider_timeout_seconds,
        ),
        top_k=settings.rag_top_k,
        concurrency=settings.ingest_concurrency,
        embed_batch_size=settings.embedding_batch_size,
        knowledge_dir=Path(settings.knowledge_dir),
        prompt_version=settings.prompt_version,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read Settings from the environment; malformed values raise ConfigurationError."""
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid environment: {_describe(e)}") from e
