"""FastAPI dependencies resolving the app-owned service objects."""

from __future__ import annotations

from fastapi import Request

from engram.config import Settings
from engram.service.lifecycle import ResourceLifecycleManager


def get_manager(request: Request) -> ResourceLifecycleManager:
    return request.app.state.manager


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
