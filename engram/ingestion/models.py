"""Data models shared by the store, the index and the chunker."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime


def format_time(seconds: float) -> str:
    """Format a time offset as ``M:SS`` or ``H:MM:SS``."""
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass(frozen=True)
class Recording:
    """A recorded meeting. Only the fields the orchestrator reads."""

    id: int
    title: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    has_transcript: bool = False
    summary: str | None = None


@dataclass(frozen=True)
class Transcript:
    """The completed transcript attached to a recording."""

    id: int
    recording_id: int
    full_text: str = ""


@dataclass(frozen=True)
class Segment:
    """A speaker-attributed span of transcribed speech."""

    id: int
    recording_id: int
    start_time: float
    end_time: float
    text: str
    speaker: str = "Unknown"


@dataclass(frozen=True)
class Chunk:
    """A token-bounded window of consecutive segments, derived per query."""

    recording_id: int
    start_time: float
    end_time: float
    text: str
    segment_ids: tuple[int, ...]
    estimated_tokens: int
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def time_window(self) -> str:
        """Formatted time window, e.g. ``"0:00 - 5:30"``."""
        return f"{format_time(self.start_time)} - {format_time(self.end_time)}"


@dataclass(frozen=True)
class ChatMessage:
    """A persisted chat turn."""

    session_id: str
    role: str  # "user" or "assistant"
    content: str
    recording_id: int | None = None
    citations: tuple[int, ...] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class SearchResult:
    """A segment matched by semantic search, resolved against the store."""

    segment: Segment
    recording: Recording
    score: float
