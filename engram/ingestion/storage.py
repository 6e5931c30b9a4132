"""Record store for recordings, transcripts, segments, embeddings and chat history."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Protocol, cast

from supabase import Client, create_client

from engram.ingestion.models import ChatMessage, Recording, Segment, Transcript

logger = logging.getLogger(__name__)


class Store(Protocol):
    """Async access to the application's persisted records."""

    async def get_all_recordings(self) -> list[Recording]: ...

    async def get_recording(self, recording_id: int) -> Recording | None: ...

    async def get_transcript(self, recording_id: int) -> Transcript | None: ...

    async def get_segments(self, transcript_id: int) -> list[Segment]: ...

    async def save_embedding(self, segment_id: int, vector: list[float], model: str) -> None: ...

    async def get_embeddings(self, transcript_id: int) -> dict[int, list[float]]: ...

    async def delete_embeddings(self, transcript_id: int) -> None: ...

    async def save_chat_message(self, message: ChatMessage) -> None: ...

    async def get_chat_history(self, session_id: str, limit: int | None = None) -> list[ChatMessage]: ...


class InMemoryStore:
    """Dictionary-backed store. Used by default and throughout the tests."""

    def __init__(self) -> None:
        self._recordings: dict[int, Recording] = {}
        self._transcripts: dict[int, Transcript] = {}  # by recording id
        self._segments: dict[int, list[Segment]] = {}  # by transcript id
        self._embeddings: dict[int, tuple[list[float], str]] = {}  # by segment id
        self._chat: dict[str, list[ChatMessage]] = defaultdict(list)

    def add_recording(
        self,
        recording: Recording,
        transcript: Transcript | None = None,
        segments: list[Segment] | None = None,
    ) -> None:
        """Seed a recording with its transcript and segments."""
        self._recordings[recording.id] = recording
        if transcript is not None:
            self._transcripts[recording.id] = transcript
            self._segments[transcript.id] = sorted(segments or [], key=lambda s: s.start_time)

    async def get_all_recordings(self) -> list[Recording]:
        return sorted(self._recordings.values(), key=lambda r: r.created_at, reverse=True)

    async def get_recording(self, recording_id: int) -> Recording | None:
        return self._recordings.get(recording_id)

    async def get_transcript(self, recording_id: int) -> Transcript | None:
        return self._transcripts.get(recording_id)

    async def get_segments(self, transcript_id: int) -> list[Segment]:
        return list(self._segments.get(transcript_id, []))

    async def save_embedding(self, segment_id: int, vector: list[float], model: str) -> None:
        self._embeddings[segment_id] = (list(vector), model)

    async def get_embeddings(self, transcript_id: int) -> dict[int, list[float]]:
        return {
            s.id: self._embeddings[s.id][0]
            for s in self._segments.get(transcript_id, [])
            if s.id in self._embeddings
        }

    async def delete_embeddings(self, transcript_id: int) -> None:
        for segment in self._segments.get(transcript_id, []):
            self._embeddings.pop(segment.id, None)

    async def save_chat_message(self, message: ChatMessage) -> None:
        self._chat[message.session_id].append(message)

    async def get_chat_history(self, session_id: str, limit: int | None = None) -> list[ChatMessage]:
        history = self._chat.get(session_id, [])
        return list(history[-limit:] if limit else history)


def get_supabase_client(url: str, key: str) -> Client:
    """Create and return a Supabase client."""
    return create_client(url, key)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _parse_vector(value: Any) -> list[float]:
    # pgvector columns come back as "[0.1,0.2,...]" strings.
    if isinstance(value, str):
        value = json.loads(value)
    return [float(v) for v in value]


class SupabaseStore:
    """Store backed by Supabase tables.

    Expects ``recordings``, ``transcripts``, ``segments``,
    ``segment_embeddings`` and ``chat_messages`` tables. supabase-py is
    synchronous, so each query runs in a worker thread.
    """

    def __init__(self, client: Client) -> None:
        self.client = client

    async def _rows(self, query: Any) -> list[dict[str, Any]]:
        result = await asyncio.to_thread(query.execute)
        # Supabase .data is typed as JSON (broad union); cast to concrete type.
        return cast(list[dict[str, Any]], result.data or [])

    @staticmethod
    def _recording(row: dict[str, Any]) -> Recording:
        return Recording(
            id=int(row["id"]),
            title=row.get("title") or "",
            created_at=_parse_timestamp(row["created_at"]),
            has_transcript=bool(row.get("has_transcript")),
            summary=row.get("summary"),
        )

    async def get_all_recordings(self) -> list[Recording]:
        rows = await self._rows(
            self.client.table("recordings").select("*").order("created_at", desc=True)
        )
        return [self._recording(r) for r in rows]

    async def get_recording(self, recording_id: int) -> Recording | None:
        rows = await self._rows(self.client.table("recordings").select("*").eq("id", recording_id))
        return self._recording(rows[0]) if rows else None

    async def get_transcript(self, recording_id: int) -> Transcript | None:
        rows = await self._rows(
            self.client.table("transcripts").select("*").eq("recording_id", recording_id).limit(1)
        )
        if not rows:
            return None
        row = rows[0]
        return Transcript(
            id=int(row["id"]),
            recording_id=int(row["recording_id"]),
            full_text=row.get("full_text") or "",
        )

    async def get_segments(self, transcript_id: int) -> list[Segment]:
        rows = await self._rows(
            self.client.table("segments")
            .select("*")
            .eq("transcript_id", transcript_id)
            .order("start_time")
        )
        return [
            Segment(
                id=int(r["id"]),
                recording_id=int(r["recording_id"]),
                start_time=float(r["start_time"]),
                end_time=float(r["end_time"]),
                text=r.get("text") or "",
                speaker=r.get("speaker") or "Unknown",
            )
            for r in rows
        ]

    async def save_embedding(self, segment_id: int, vector: list[float], model: str) -> None:
        await self._rows(
            self.client.table("segment_embeddings").upsert(
                {"segment_id": segment_id, "embedding": vector, "model": model},
                on_conflict="segment_id",
            )
        )

    async def _segment_ids(self, transcript_id: int) -> list[int]:
        rows = await self._rows(
            self.client.table("segments").select("id").eq("transcript_id", transcript_id)
        )
        return [int(r["id"]) for r in rows]

    async def get_embeddings(self, transcript_id: int) -> dict[int, list[float]]:
        segment_ids = await self._segment_ids(transcript_id)
        if not segment_ids:
            return {}
        rows = await self._rows(
            self.client.table("segment_embeddings")
            .select("segment_id,embedding")
            .in_("segment_id", segment_ids)
        )
        return {int(r["segment_id"]): _parse_vector(r["embedding"]) for r in rows}

    async def delete_embeddings(self, transcript_id: int) -> None:
        segment_ids = await self._segment_ids(transcript_id)
        if segment_ids:
            await self._rows(
                self.client.table("segment_embeddings").delete().in_("segment_id", segment_ids)
            )
            logger.debug("Deleted %d embeddings for transcript %d", len(segment_ids), transcript_id)

    async def save_chat_message(self, message: ChatMessage) -> None:
        await self._rows(
            self.client.table("chat_messages").insert(
                {
                    "session_id": message.session_id,
                    "recording_id": message.recording_id,
                    "role": message.role,
                    "content": message.content,
                    "citations": list(message.citations) if message.citations else None,
                    "created_at": message.created_at.isoformat(),
                }
            )
        )

    async def get_chat_history(self, session_id: str, limit: int | None = None) -> list[ChatMessage]:
        query = (
            self.client.table("chat_messages")
            .select("*")
            .eq("session_id", session_id)
            .order("created_at", desc=True)
        )
        if limit:
            query = query.limit(limit)
        rows = await self._rows(query)
        messages = [
            ChatMessage(
                session_id=r["session_id"],
                role=r["role"],
                content=r.get("content") or "",
                recording_id=r.get("recording_id"),
                citations=tuple(r["citations"]) if r.get("citations") else None,
                created_at=_parse_timestamp(r["created_at"]),
            )
            for r in rows
        ]
        messages.reverse()
        return messages
