"""Wires the default component graph from settings."""

from __future__ import annotations

import logging

import httpx

from engram.backends.base import GenerationBackend, HostedChatConfig, HostedGeminiConfig
from engram.backends.gemini import HostedGeminiBackend
from engram.backends.local import LlamaCppModelLoader, ModelLoader
from engram.backends.openai_chat import HostedChatBackend
from engram.config import Settings, get_settings
from engram.errors import InvalidConfiguration
from engram.ingestion.embeddings import Embedder, HashingEmbedder, OpenAIEmbedder
from engram.ingestion.storage import InMemoryStore, Store, SupabaseStore, get_supabase_client
from engram.pipeline_config import BackendKind
from engram.retrieval.router import QueryRouter
from engram.retrieval.search import VectorIndex
from engram.retrieval.vector_store import VectorStore
from engram.service.lifecycle import HostedBackendFactory, HostedConfig, ResourceLifecycleManager

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> Store:
    if settings.supabase_url and settings.supabase_key:
        return SupabaseStore(get_supabase_client(settings.supabase_url, settings.supabase_key))
    logger.info("Supabase not configured; using in-memory store")
    return InMemoryStore()


def build_embedder(settings: Settings) -> Embedder:
    if settings.openai_api_key:
        return OpenAIEmbedder(api_key=settings.openai_api_key, model=settings.embedding_model)
    logger.info("OpenAI key not set; using offline hashing embedder")
    return HashingEmbedder()


def hosted_config_from_settings(
    kind: BackendKind,
    settings: Settings,
    api_key: str | None = None,
    model: str | None = None,
) -> HostedConfig:
    """Hosted backend configuration, with explicit values overriding settings."""
    if kind is BackendKind.HOSTED_CHAT:
        return HostedChatConfig(
            api_key=api_key if api_key is not None else settings.openai_api_key,
            model=model or settings.openai_model,
            base_url=settings.openai_base_url,
        )
    if kind is BackendKind.HOSTED_GEMINI:
        return HostedGeminiConfig(
            api_key=api_key if api_key is not None else settings.gemini_api_key,
            model=model or settings.gemini_model,
            base_url=settings.gemini_base_url,
        )
    raise InvalidConfiguration(f"{kind.value} is not a hosted backend")


def hosted_backend_factory(settings: Settings) -> HostedBackendFactory:
    """Return a callable that builds hosted backends with the configured timeouts."""
    timeout = httpx.Timeout(settings.http_read_timeout_seconds, connect=settings.http_connect_timeout_seconds)

    def build(config: HostedConfig) -> GenerationBackend:
        if isinstance(config, HostedGeminiConfig):
            return HostedGeminiBackend(config, timeout=timeout, error_body_limit=settings.error_body_limit)
        return HostedChatBackend(config, timeout=timeout)

    return build


def build_manager(
    settings: Settings | None = None,
    *,
    store: Store | None = None,
    embedder: Embedder | None = None,
    loader: ModelLoader | None = None,
) -> ResourceLifecycleManager:
    """Build a manager and everything it depends on.

    Args:
        settings: Application settings; defaults to :func:`get_settings`.
        store: Overrides the store chosen from settings.
        embedder: Overrides the embedder chosen from settings.
        loader: Overrides the llama-cpp model loader.
    """
    settings = settings or get_settings()
    store = store or build_store(settings)
    embedder = embedder or build_embedder(settings)
    index = VectorIndex(
        store,
        embedder,
        VectorStore(settings.vector_store_path or None),
        batch_size=settings.index_batch_size,
        min_similarity=settings.min_similarity,
        poll_interval=settings.poll_interval_seconds,
        init_timeout=settings.init_wait_timeout_seconds,
    )
    loader = loader or LlamaCppModelLoader(
        cache_dir=settings.model_cache_dir,
        filename=settings.local_model_file,
        n_ctx=settings.local_context_window,
    )
    return ResourceLifecycleManager(
        store,
        index,
        loader,
        hosted_backend_factory(settings),
        QueryRouter(store, index, max_context_segments=settings.max_context_segments),
        idle_timeout=settings.idle_timeout_seconds,
        poll_interval=settings.poll_interval_seconds,
        init_wait_timeout=settings.init_wait_timeout_seconds,
        setup_wait_timeout=settings.setup_wait_timeout_seconds,
        memory_budget_fraction=settings.memory_budget_fraction,
        local_token_delay=settings.local_token_delay_seconds,
        chat_history_window=settings.chat_history_window,
    )
