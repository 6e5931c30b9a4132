"""Typed error taxonomy shared by every orchestration component."""

from __future__ import annotations


class EngramError(Exception):
    """Base class for errors raised to callers of the orchestration layer.

    ``user_message`` is a short, categorized sentence a presentation layer can
    show without knowing the concrete error type.
    """

    default_message = "Something went wrong."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def user_message(self) -> str:
        return str(self)


class NotInitialized(EngramError):
    default_message = "AI service not initialized."


class NotConfigured(EngramError):
    default_message = "No AI backend is configured. Select a local model or add an API key in settings."


class BackendUnavailable(EngramError):
    default_message = "The AI backend is unavailable."


class InsufficientResource(EngramError):
    """Not enough memory to load the requested local model."""

    def __init__(self, available_gb: float, required_gb: float, message: str | None = None) -> None:
        self.available_gb = available_gb
        self.required_gb = required_gb
        super().__init__(
            message
            or f"Insufficient memory: {available_gb:.1f}GB available, {required_gb:.1f}GB required"
        )


class GenerationTimeout(EngramError):
    default_message = "The AI backend took too long to respond."


class NetworkError(EngramError):
    """Transport or HTTP-level failure talking to a hosted provider."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Network error: {reason}")


class VectorIndexError(EngramError):
    default_message = "Vector index error."


class TranscriptNotFound(EngramError):
    def __init__(self, recording_id: int | None = None) -> None:
        self.recording_id = recording_id
        super().__init__("No transcript found for this recording")


class InvalidConfiguration(EngramError):
    default_message = "Invalid configuration."


# Ordered: the first matching category wins.
_CATEGORIES: list[tuple[tuple[str, ...], str]] = [
    (
        ("out of memory", "memory", "allocation"),
        "Not enough memory. Try closing other apps or select a smaller model.",
    ),
    (
        ("network", "connection", "internet", "offline", "timed out", "timeout"),
        "Network error. Check your internet connection and try again.",
    ),
    (
        ("403", "forbidden", "access denied", "permission", "restricted"),
        "Model access restricted. Try a different model.",
    ),
    (
        ("404", "not found"),
        "Model not found. The model ID may be incorrect.",
    ),
]


def categorize_error(exc: BaseException) -> str:
    """Map an arbitrary failure to short, user-actionable guidance.

    Matches known failure substrings in the error text; falls back to the
    error's own message when nothing matches.
    """
    if isinstance(exc, InsufficientResource):
        return exc.user_message
    text = f"{exc} {exc!r}".lower()
    for needles, message in _CATEGORIES:
        if any(needle in text for needle in needles):
            return message
    return str(exc) or type(exc).__name__
