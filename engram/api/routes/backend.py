"""Backend endpoints: status, model catalogue and backend selection."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from engram.api.dependencies import get_app_settings, get_manager
from engram.api.models import (
    HostedBackendRequest,
    LocalBackendRequest,
    ModelInfoResponse,
    StatusResponse,
)
from engram.backends.base import HostedChatConfig, HostedGeminiConfig, LocalBackendConfig
from engram.config import Settings
from engram.pipeline_config import BackendKind
from engram.service.factory import hosted_config_from_settings
from engram.service.lifecycle import ResourceLifecycleManager

router = APIRouter()


def _backend_kind(manager: ResourceLifecycleManager) -> BackendKind | None:
    config = manager.config
    if isinstance(config, LocalBackendConfig):
        return BackendKind.LOCAL
    if isinstance(config, HostedChatConfig):
        return BackendKind.HOSTED_CHAT
    if isinstance(config, HostedGeminiConfig):
        return BackendKind.HOSTED_GEMINI
    return None


async def _status(manager: ResourceLifecycleManager) -> StatusResponse:
    status = manager.status
    return StatusResponse(
        state=status.state.value,
        description=status.description,
        model_name=status.model_name,
        progress=status.progress,
        message=status.message,
        backend=_backend_kind(manager),
        indexed_recordings=manager.indexed_recordings_count,
        total_indexable_recordings=await manager.total_indexable_recordings(),
        in_flight=manager.in_flight,
        activity=manager.activity,
    )


@router.get("/api/status", response_model=StatusResponse)
async def get_status(manager: ResourceLifecycleManager = Depends(get_manager)) -> StatusResponse:
    return await _status(manager)


@router.get("/api/models", response_model=list[ModelInfoResponse])
async def list_models(manager: ResourceLifecycleManager = Depends(get_manager)) -> list[ModelInfoResponse]:
    """Registry of local models, with whether each is already downloaded."""
    return [
        ModelInfoResponse(
            id=m.id,
            display_name=m.display_name,
            description=m.description,
            size_gb=m.size_gb,
            memory_gb=m.memory_gb,
            tier=m.tier.value,
            is_default=m.is_default,
            cached=manager.is_model_cached(m.id),
        )
        for m in manager.available_models()
    ]


@router.post("/api/backend/local", response_model=StatusResponse)
async def select_local(
    request: LocalBackendRequest,
    manager: ResourceLifecycleManager = Depends(get_manager),
    settings: Settings = Depends(get_app_settings),
) -> StatusResponse:
    await manager.select_local_backend(request.model_id or settings.local_model_id)
    return await _status(manager)


@router.post("/api/backend/hosted", response_model=StatusResponse)
async def select_hosted(
    request: HostedBackendRequest,
    manager: ResourceLifecycleManager = Depends(get_manager),
    settings: Settings = Depends(get_app_settings),
) -> StatusResponse:
    config = hosted_config_from_settings(request.provider, settings, request.api_key, request.model)
    await manager.select_hosted_backend(config)
    return await _status(manager)


@router.post("/api/backend/unload", response_model=StatusResponse)
async def unload(manager: ResourceLifecycleManager = Depends(get_manager)) -> StatusResponse:
    await manager.unload()
    return await _status(manager)
