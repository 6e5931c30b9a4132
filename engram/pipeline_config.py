"""Pipeline configuration: backend kinds and chunking budget presets."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BackendKind(str, Enum):
    """Available generation backends."""

    LOCAL = "local"
    HOSTED_CHAT = "hosted_chat"
    HOSTED_GEMINI = "hosted_gemini"


# Room for the system prompt (~200 tokens) and the response (~500 tokens).
PROMPT_RESPONSE_RESERVE = 700

# Per-chunk room for the map prompt wrapped around each chunk.
CHUNK_PROMPT_OVERHEAD = 500


@dataclass(frozen=True)
class ChunkingConfig:
    """Immutable token budget for fitting transcripts into a backend's context.

    ``max_tokens`` is the backend's effective budget; ``overlap_tokens`` bounds
    the tail carried from one chunk into the next.
    """

    max_tokens: int
    overlap_tokens: int

    @property
    def available_tokens(self) -> int:
        return self.max_tokens - PROMPT_RESPONSE_RESERVE

    @property
    def chunk_budget(self) -> int:
        return self.max_tokens - CHUNK_PROMPT_OVERHEAD


# Local models run with ~4K context; hosted APIs can take far more.
LOCAL_CHUNKING = ChunkingConfig(max_tokens=2000, overlap_tokens=200)
HOSTED_CHUNKING = ChunkingConfig(max_tokens=50000, overlap_tokens=500)


def chunking_config_for(is_local: bool) -> ChunkingConfig:
    """Return the budget preset for a local or hosted backend."""
    return LOCAL_CHUNKING if is_local else HOSTED_CHUNKING
