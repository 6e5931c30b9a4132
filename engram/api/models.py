"""Pydantic request/response schemas for the Engram API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from engram.pipeline_config import BackendKind


class ChatRequest(BaseModel):
    """Request body for the /api/chat endpoint."""

    query: str = Field(min_length=1)
    recording_id: int | None = None
    session_id: str = "default"


class SearchRequest(BaseModel):
    query: str
    limit: int = Field(default=5, ge=1, le=50)
    recording_id: int | None = None


class SearchHit(BaseModel):
    """A matched transcript segment."""

    recording_id: int
    recording_title: str
    segment_id: int
    speaker: str
    start_time: float
    end_time: float
    text: str
    score: float


class IndexResponse(BaseModel):
    recording_id: int
    indexed: bool


class RebuildResponse(BaseModel):
    indexed_recordings: int


class StatusResponse(BaseModel):
    """Lifecycle status plus index counters."""

    state: str
    description: str
    model_name: str | None = None
    progress: float | None = None
    message: str | None = None
    backend: BackendKind | None = None
    indexed_recordings: int = 0
    total_indexable_recordings: int = 0
    in_flight: int = 0
    activity: str | None = None


class ModelInfoResponse(BaseModel):
    id: str
    display_name: str
    description: str
    size_gb: float
    memory_gb: float
    tier: str
    is_default: bool = False
    cached: bool = False


class LocalBackendRequest(BaseModel):
    """Request body for selecting a local model. Omit ``model_id`` for the default."""

    model_id: str | None = None


class HostedBackendRequest(BaseModel):
    """Request body for selecting a hosted provider.

    Unset ``api_key`` and ``model`` fall back to the server's settings.
    """

    provider: BackendKind = BackendKind.HOSTED_CHAT
    api_key: str | None = None
    model: str | None = None
