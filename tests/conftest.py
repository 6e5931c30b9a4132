"""Shared fixtures: seeded in-memory store and a scripted generation backend."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

import pytest

from engram.backends.base import GenerationBackend, GenerationParameters, Message
from engram.ingestion.embeddings import HashingEmbedder
from engram.ingestion.models import Recording, Segment, Transcript
from engram.ingestion.storage import InMemoryStore
from engram.retrieval.search import VectorIndex
from engram.retrieval.vector_store import VectorStore


@dataclass
class Call:
    prompt: str
    context: str
    system_prompt: str | None
    history: tuple[Message, ...]
    params: GenerationParameters


@dataclass
class FakeBackend(GenerationBackend):
    """Replays scripted responses, one per call, split into fixed-size pieces."""

    responses: list[str] = field(default_factory=lambda: ["ok"])
    is_local: bool = False
    piece_size: int = 3
    fail_on_call: int | None = None
    calls: list[Call] = field(default_factory=list)
    closed: bool = False

    @property
    def model_name(self) -> str:
        return "fake-model"

    async def generate_stream(
        self,
        prompt: str,
        context: str,
        system_prompt: str | None = None,
        history: Sequence[Message] = (),
        params: GenerationParameters = GenerationParameters(),
    ) -> AsyncGenerator[str, None]:
        index = len(self.calls)
        self.calls.append(Call(prompt, context, system_prompt, tuple(history), params))
        if self.fail_on_call is not None and index == self.fail_on_call:
            raise RuntimeError("backend exploded")
        text = self.responses[min(index, len(self.responses) - 1)]
        for start in range(0, len(text), self.piece_size):
            yield text[start : start + self.piece_size]

    async def close(self) -> None:
        self.closed = True


def make_segments(recording_id: int, texts: Sequence[str], first_id: int = 1, speaker: str = "Alice") -> list[Segment]:
    return [
        Segment(
            id=first_id + i,
            recording_id=recording_id,
            start_time=i * 10.0,
            end_time=i * 10.0 + 9.0,
            text=text,
            speaker=speaker,
        )
        for i, text in enumerate(texts)
    ]


def seed_recording(
    store: InMemoryStore,
    recording_id: int,
    title: str,
    texts: Sequence[str],
    first_segment_id: int,
) -> list[Segment]:
    segments = make_segments(recording_id, texts, first_id=first_segment_id)
    store.add_recording(
        Recording(
            id=recording_id,
            title=title,
            created_at=datetime(2025, 1, recording_id % 28 + 1, tzinfo=UTC),
            has_transcript=True,
        ),
        Transcript(id=recording_id * 10, recording_id=recording_id, full_text=" ".join(texts)),
        segments,
    )
    return segments


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    seed_recording(
        store,
        42,
        "Budget review",
        [
            "The marketing budget for next quarter is fifty thousand dollars.",
            "We agreed to cut travel spending in half.",
            "Bob will send the revised budget by Friday.",
        ],
        first_segment_id=100,
    )
    seed_recording(
        store,
        43,
        "Launch planning",
        [
            "The product launch moves to March.",
            "Marketing needs the budget numbers before launch.",
        ],
        first_segment_id=200,
    )
    return store


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def index(store: InMemoryStore, embedder: HashingEmbedder) -> VectorIndex:
    return VectorIndex(store, embedder, VectorStore(), batch_size=2, min_similarity=0.0, poll_interval=0.01)


@pytest.fixture
def fake_backend() -> Iterator[FakeBackend]:
    yield FakeBackend()
