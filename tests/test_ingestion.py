"""Tests for the ingestion layer: models, stores, embedders and the vector store."""

from __future__ import annotations

import math
import uuid
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from engram.ingestion.embeddings import HashingEmbedder, OpenAIEmbedder
from engram.ingestion.models import ChatMessage, format_time
from engram.ingestion.storage import InMemoryStore, SupabaseStore
from engram.retrieval.vector_store import VectorStore


class TestFormatTime:
    def test_minutes(self) -> None:
        assert format_time(0) == "0:00"
        assert format_time(75.9) == "1:15"

    def test_hours(self) -> None:
        assert format_time(3725) == "1:02:05"


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_recordings_newest_first(self, store: InMemoryStore) -> None:
        recordings = await store.get_all_recordings()
        assert [r.id for r in recordings] == [43, 42]

    @pytest.mark.asyncio
    async def test_missing_lookups(self, store: InMemoryStore) -> None:
        assert await store.get_recording(1) is None
        assert await store.get_transcript(1) is None
        assert await store.get_segments(1) == []

    @pytest.mark.asyncio
    async def test_embeddings_roundtrip_and_delete(self, store: InMemoryStore) -> None:
        await store.save_embedding(100, [0.1, 0.2], "m")
        await store.save_embedding(200, [0.3], "m")
        assert await store.get_embeddings(420) == {100: [0.1, 0.2]}

        await store.delete_embeddings(420)
        assert await store.get_embeddings(420) == {}
        assert await store.get_embeddings(430) == {200: [0.3]}

    @pytest.mark.asyncio
    async def test_chat_history_limit_keeps_newest(self) -> None:
        store = InMemoryStore()
        for i in range(5):
            await store.save_chat_message(ChatMessage(session_id="s", role="user", content=str(i)))
        history = await store.get_chat_history("s", limit=2)
        assert [m.content for m in history] == ["3", "4"]
        assert await store.get_chat_history("other") == []


def _mock_rows(client: MagicMock, rows: list[dict]) -> MagicMock:
    """Make every query chain on *client* return *rows* when executed."""
    query = MagicMock()
    for method in ("select", "eq", "order", "limit", "in_", "upsert", "insert", "delete"):
        getattr(query, method).return_value = query
    query.execute.return_value = SimpleNamespace(data=rows)
    client.table.return_value = query
    return query


class TestSupabaseStore:
    @pytest.mark.asyncio
    async def test_get_recording(self) -> None:
        client = MagicMock()
        query = _mock_rows(
            client,
            [{"id": 5, "title": "Standup", "created_at": "2025-03-01T10:00:00Z", "has_transcript": True}],
        )
        recording = await SupabaseStore(client).get_recording(5)

        assert recording is not None
        assert (recording.id, recording.title, recording.has_transcript) == (5, "Standup", True)
        assert recording.created_at.year == 2025
        client.table.assert_called_with("recordings")
        query.eq.assert_called_with("id", 5)

    @pytest.mark.asyncio
    async def test_get_segments_defaults_speaker(self) -> None:
        client = MagicMock()
        _mock_rows(
            client,
            [{"id": 1, "recording_id": 5, "start_time": "1.5", "end_time": 3, "text": "hi", "speaker": None}],
        )
        segments = await SupabaseStore(client).get_segments(50)
        assert segments[0].speaker == "Unknown"
        assert segments[0].start_time == 1.5

    @pytest.mark.asyncio
    async def test_get_embeddings_parses_pgvector_strings(self) -> None:
        client = MagicMock()
        _mock_rows(client, [{"id": 1, "segment_id": 1, "embedding": "[0.5,0.25]"}])
        embeddings = await SupabaseStore(client).get_embeddings(50)
        assert embeddings == {1: [0.5, 0.25]}

    @pytest.mark.asyncio
    async def test_chat_history_is_chronological(self) -> None:
        client = MagicMock()
        query = _mock_rows(
            client,
            [
                {"session_id": "s", "role": "assistant", "content": "b", "created_at": "2025-01-01T00:00:02+00:00"},
                {"session_id": "s", "role": "user", "content": "a", "created_at": "2025-01-01T00:00:01+00:00"},
            ],
        )
        history = await SupabaseStore(client).get_chat_history("s", limit=2)
        assert [m.content for m in history] == ["a", "b"]
        query.limit.assert_called_with(2)

    @pytest.mark.asyncio
    async def test_save_chat_message(self) -> None:
        client = MagicMock()
        query = _mock_rows(client, [])
        await SupabaseStore(client).save_chat_message(ChatMessage(session_id="s", role="user", content="hi"))
        row = query.insert.call_args.args[0]
        assert row["content"] == "hi"
        assert row["citations"] is None


class TestEmbedders:
    @pytest.mark.asyncio
    async def test_hashing_is_normalised_and_deterministic(self) -> None:
        embedder = HashingEmbedder(dim=64)
        first = await embedder.embed("Budget review on Friday")
        second = await embedder.embed("budget REVIEW on friday")
        assert first == second
        assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0)
        assert await embedder.embed("") == [0.0] * 64
        assert embedder.model_name == "hashing-64"

    @pytest.mark.asyncio
    async def test_openai_embedder_restores_input_order(self) -> None:
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(
                data=[
                    SimpleNamespace(index=1, embedding=[2.0]),
                    SimpleNamespace(index=0, embedding=[1.0]),
                ]
            )
        )
        embedder = OpenAIEmbedder(model="text-embedding-3-small", client=client)
        assert await embedder.embed_batch(["a", "b"]) == [[1.0], [2.0]]
        client.embeddings.create.assert_awaited_once_with(input=["a", "b"], model="text-embedding-3-small")
        assert await embedder.embed_batch([]) == []


class TestVectorStore:
    def test_search_ranks_and_thresholds(self) -> None:
        store = VectorStore()
        a, b, c = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        store.add([(a, [1.0, 0.0]), (b, [1.0, 1.0]), (c, [0.0, 1.0])])

        hits = store.search([1.0, 0.0], limit=3, min_similarity=0.5)
        assert [doc for doc, _ in hits] == [a, b]
        assert hits[0][1] == pytest.approx(1.0, abs=1e-5)
        assert hits[1][1] == pytest.approx(math.sqrt(0.5), abs=1e-5)
        assert store.search([1.0, 0.0], limit=0) == []

    def test_limit_larger_than_collection(self) -> None:
        store = VectorStore()
        assert store.search([1.0, 0.0], limit=5) == []
        doc = uuid.uuid4()
        store.add([(doc, [0.0, 1.0])])
        assert [d for d, _ in store.search([0.0, 1.0], limit=5)] == [doc]

    def test_delete_and_reset(self) -> None:
        store = VectorStore()
        a, b = uuid.uuid4(), uuid.uuid4()
        store.add([(a, [1.0, 0.0]), (b, [0.0, 1.0])])
        store.delete([a])
        assert a not in store and b in store
        assert "not-a-uuid" not in store
        store.reset()
        assert len(store) == 0
        assert store.document_ids() == set()

    def test_in_memory_stores_are_isolated(self) -> None:
        first, second = VectorStore(), VectorStore()
        first.add([(uuid.uuid4(), [1.0, 0.0])])
        assert len(first) == 1
        assert len(second) == 0

    def test_persistence(self, tmp_path: Path) -> None:
        path = tmp_path / "chroma"
        doc = uuid.uuid4()
        VectorStore(path).add([(doc, [3.0, 4.0])])

        restored = VectorStore(path)
        assert restored.load() == 1
        assert restored.document_ids() == {doc}
        assert restored.search([3.0, 4.0], limit=1)[0][0] == doc
