from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com"
    openai_model: str = "gpt-4o-mini"
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_model: str = "gemini-2.0-flash"

    # Supabase (optional durable Store; in-memory when unset)
    supabase_url: str = ""
    supabase_key: str = ""

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    embedding_model: str = "text-embedding-3-small"
    local_model_id: str = "bartowski/gemma-2-2b-it-GGUF"
    local_model_file: str = "*Q4_K_M.gguf"  # glob matched inside the repository
    local_context_window: int = 4096
    model_cache_dir: str = "~/.cache/huggingface/hub"
    vector_store_path: str = ""  # Chroma database directory; empty = in-memory only

    # Resource lifecycle
    idle_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 0.5
    init_wait_timeout_seconds: float = 120.0
    setup_wait_timeout_seconds: float = 120.0
    memory_budget_fraction: float = 0.3
    local_token_delay_seconds: float = 0.0

    # Retrieval
    min_similarity: float = 0.1
    index_batch_size: int = 32
    max_context_segments: int = 10
    chat_history_window: int = 10

    # Hosted providers
    http_connect_timeout_seconds: float = 10.0
    http_read_timeout_seconds: float = 60.0
    error_body_limit: int = 500

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]

