"""Lifecycle status of the active generation backend."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ServiceState(StrEnum):
    NOT_CONFIGURED = "not_configured"
    DOWNLOADING = "downloading"
    LOADING = "loading"
    READY = "ready"
    SLEEPING = "sleeping"
    ERROR = "error"


@dataclass(frozen=True)
class ServiceStatus:
    """One lifecycle state plus the fields that state carries.

    Use the constructors (``ServiceStatus.ready("Gemma 2 2B")``) rather than
    building instances directly.
    """

    state: ServiceState
    model_name: str | None = None
    progress: float | None = None  # DOWNLOADING only, 0.0-1.0
    message: str | None = None  # ERROR only

    @classmethod
    def not_configured(cls) -> ServiceStatus:
        return cls(ServiceState.NOT_CONFIGURED)

    @classmethod
    def downloading(cls, progress: float, model_name: str) -> ServiceStatus:
        return cls(ServiceState.DOWNLOADING, model_name=model_name, progress=max(0.0, min(1.0, progress)))

    @classmethod
    def loading(cls, model_name: str) -> ServiceStatus:
        return cls(ServiceState.LOADING, model_name=model_name)

    @classmethod
    def ready(cls, model_name: str) -> ServiceStatus:
        return cls(ServiceState.READY, model_name=model_name)

    @classmethod
    def sleeping(cls, model_name: str) -> ServiceStatus:
        return cls(ServiceState.SLEEPING, model_name=model_name)

    @classmethod
    def error(cls, message: str) -> ServiceStatus:
        return cls(ServiceState.ERROR, message=message)

    @property
    def is_ready(self) -> bool:
        return self.state is ServiceState.READY

    @property
    def description(self) -> str:
        """Short human-readable summary."""
        if self.state is ServiceState.NOT_CONFIGURED:
            return "Not configured"
        if self.state is ServiceState.DOWNLOADING:
            return f"Downloading {self.model_name} ({(self.progress or 0.0) * 100:.0f}%)"
        if self.state is ServiceState.LOADING:
            return f"Loading {self.model_name}..."
        if self.state is ServiceState.READY:
            return f"Ready ({self.model_name})"
        if self.state is ServiceState.SLEEPING:
            return f"Sleeping ({self.model_name})"
        return f"Error: {self.message}"
