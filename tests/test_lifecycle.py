"""Tests for backend selection, readiness, idle eviction and chat history."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
from conftest import FakeBackend

from engram.backends.base import (
    GenerationParameters,
    HostedChatConfig,
    HostedGeminiConfig,
    LocalBackendConfig,
    Message,
    Role,
)
from engram.backends.local import ProgressCallback
from engram.errors import (
    BackendUnavailable,
    InsufficientResource,
    InvalidConfiguration,
    NotConfigured,
    TranscriptNotFound,
)
from engram.ingestion.embeddings import HashingEmbedder
from engram.ingestion.models import ChatMessage
from engram.ingestion.storage import InMemoryStore
from engram.retrieval.search import VectorIndex
from engram.retrieval.vector_store import VectorStore
from engram.service.coordination import wait_until
from engram.service.lifecycle import HostedConfig, ResourceLifecycleManager
from engram.service.status import ServiceState, ServiceStatus

GEMMA = "bartowski/gemma-2-2b-it-GGUF"
SMOL = "bartowski/SmolLM2-360M-Instruct-GGUF"


class FakeHandle:
    def __init__(self, text: str = "local answer") -> None:
        self.text = text
        self.closed = False

    def stream_completion(self, prompt: str, params: GenerationParameters) -> Iterator[str]:
        yield from self.text.split(" ")

    def close(self) -> None:
        self.closed = True


class FakeLoader:
    def __init__(self, cached: bool = True, error: Exception | None = None) -> None:
        self.cached = cached
        self.error = error
        self.loads: list[str] = []
        self.handles: list[FakeHandle] = []
        self.progress: list[float] = []

    def is_available(self, model_id: str) -> bool:
        return self.cached

    def load(self, model_id: str, on_progress: ProgressCallback | None = None) -> FakeHandle:
        self.loads.append(model_id)
        if self.error is not None:
            raise self.error
        for fraction in (0.0, 0.5, 1.0):
            self.progress.append(fraction)
            if on_progress is not None:
                on_progress(fraction)
        handle = FakeHandle()
        self.handles.append(handle)
        return handle


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class HostedFactory:
    def __init__(self) -> None:
        self.built: list[FakeBackend] = []

    def __call__(self, config: HostedConfig) -> FakeBackend:
        backend = FakeBackend()
        self.built.append(backend)
        return backend


@pytest.fixture
def loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def hosted() -> HostedFactory:
    return HostedFactory()


@pytest_asyncio.fixture
async def manager(
    store: InMemoryStore,
    index: VectorIndex,
    loader: FakeLoader,
    hosted: HostedFactory,
    clock: Clock,
) -> AsyncIterator[ResourceLifecycleManager]:
    manager = ResourceLifecycleManager(
        store,
        index,
        loader,
        hosted,
        idle_timeout=60.0,
        poll_interval=0.01,
        init_wait_timeout=2.0,
        setup_wait_timeout=2.0,
        memory_reader=lambda: 64.0,
        clock=clock,
    )
    yield manager
    await manager.shutdown()


async def _chat(manager: ResourceLifecycleManager, query: str, recording_id: int | None = None) -> str:
    return await manager.chat_complete(query, recording_id, session_id="s1")


class TestInitialization:
    @pytest.mark.asyncio
    async def test_concurrent_initialize_runs_once(self, manager: ResourceLifecycleManager) -> None:
        await asyncio.gather(*(manager.ensure_initialized() for _ in range(5)))
        assert manager.indexed_recordings_count == 2

    @pytest.mark.asyncio
    async def test_starts_not_configured(self, manager: ResourceLifecycleManager) -> None:
        assert manager.status.state is ServiceState.NOT_CONFIGURED
        assert manager.backend is None
        with pytest.raises(NotConfigured):
            await _chat(manager, "hello")


class TestLocalSelection:
    @pytest.mark.asyncio
    async def test_ready_after_load(self, manager: ResourceLifecycleManager, loader: FakeLoader) -> None:
        await manager.select_local_backend(GEMMA)
        assert manager.is_ready
        assert manager.status.model_name == "Gemma 2 2B"
        assert manager.config == LocalBackendConfig(GEMMA)
        assert manager.backend is not None and manager.backend.is_local
        assert loader.progress == [0.0, 0.5, 1.0]

    @pytest.mark.asyncio
    async def test_reselecting_loaded_model_is_noop(self, manager: ResourceLifecycleManager, loader: FakeLoader) -> None:
        await manager.select_local_backend(GEMMA)
        await manager.select_local_backend(GEMMA)
        assert loader.loads == [GEMMA]

    @pytest.mark.asyncio
    async def test_concurrent_selection_loads_once(self, manager: ResourceLifecycleManager, loader: FakeLoader) -> None:
        await asyncio.gather(manager.select_local_backend(GEMMA), manager.select_local_backend(GEMMA))
        assert loader.loads == [GEMMA]
        assert manager.is_ready

    @pytest.mark.asyncio
    async def test_switching_models_closes_previous(self, manager: ResourceLifecycleManager, loader: FakeLoader) -> None:
        await manager.select_local_backend(GEMMA)
        await manager.select_local_backend(SMOL)
        assert loader.handles[0].closed
        assert manager.status.model_name == "SmolLM 360M"

    @pytest.mark.asyncio
    async def test_insufficient_memory(self, manager: ResourceLifecycleManager, loader: FakeLoader) -> None:
        manager._memory_reader = lambda: 2.0  # 30% usable -> 0.6GB
        with pytest.raises(InsufficientResource) as exc_info:
            await manager.select_local_backend(GEMMA)

        assert exc_info.value.available_gb == pytest.approx(0.6)
        assert exc_info.value.required_gb == 2.0
        assert manager.status.state is ServiceState.ERROR
        assert manager.status.message == "Not enough memory. Try SmolLM 360M instead."
        assert loader.loads == []

    @pytest.mark.asyncio
    async def test_unknown_memory_skips_check(self, manager: ResourceLifecycleManager) -> None:
        manager._memory_reader = lambda: None
        await manager.select_local_backend(GEMMA)
        assert manager.is_ready

    @pytest.mark.asyncio
    async def test_load_failure_is_categorized(self, manager: ResourceLifecycleManager, loader: FakeLoader) -> None:
        loader.error = OSError("Connection reset while downloading")
        with pytest.raises(BackendUnavailable):
            await manager.select_local_backend(GEMMA)
        assert manager.status.state is ServiceState.ERROR
        assert manager.status.message == "Network error. Check your internet connection and try again."
        with pytest.raises(BackendUnavailable):
            await _chat(manager, "hello")


class TestHostedSelection:
    @pytest.mark.asyncio
    async def test_empty_key(self, manager: ResourceLifecycleManager) -> None:
        with pytest.raises(NotConfigured):
            await manager.select_hosted_backend(HostedChatConfig(api_key="  ", model="gpt-4o-mini"))

    @pytest.mark.asyncio
    async def test_blank_model(self, manager: ResourceLifecycleManager) -> None:
        with pytest.raises(InvalidConfiguration):
            await manager.select_hosted_backend(HostedGeminiConfig(api_key="k", model=" "))

    @pytest.mark.asyncio
    async def test_replaces_local_backend(
        self,
        manager: ResourceLifecycleManager,
        loader: FakeLoader,
        hosted: HostedFactory,
    ) -> None:
        await manager.select_local_backend(GEMMA)
        config = HostedChatConfig(api_key="sk", model="gpt-4o-mini")
        await manager.select_hosted_backend(config)

        assert loader.handles[0].closed
        assert manager.config == config
        assert manager.status.model_name == "gpt-4o-mini"
        assert manager.backend is hosted.built[0]

    @pytest.mark.asyncio
    async def test_unload(self, manager: ResourceLifecycleManager, hosted: HostedFactory) -> None:
        await manager.select_hosted_backend(HostedChatConfig(api_key="sk", model="m"))
        await manager.unload()
        assert hosted.built[0].closed
        assert manager.config is None
        assert manager.status.state is ServiceState.NOT_CONFIGURED


class TestIdleEviction:
    @pytest.mark.asyncio
    async def test_evicts_after_timeout(self, manager: ResourceLifecycleManager, loader: FakeLoader, clock: Clock) -> None:
        await manager.select_local_backend(GEMMA)
        clock.now += 30
        assert not await manager.check_idle()

        clock.now += 31
        assert await manager.check_idle()
        assert manager.status.state is ServiceState.SLEEPING
        assert manager.status.model_name == "Gemma 2 2B"
        assert loader.handles[0].closed

    @pytest.mark.asyncio
    async def test_hosted_backend_never_evicted(self, manager: ResourceLifecycleManager, clock: Clock) -> None:
        await manager.select_hosted_backend(HostedChatConfig(api_key="sk", model="m"))
        clock.now += 10_000
        assert not await manager.check_idle()
        assert manager.is_ready

    @pytest.mark.asyncio
    async def test_not_evicted_while_generating(self, manager: ResourceLifecycleManager, clock: Clock) -> None:
        await manager.select_local_backend(GEMMA)
        stream = manager.generate_stream("q")
        assert await stream.__anext__() == "local"
        clock.now += 120
        assert not await manager.check_idle()
        await stream.aclose()
        assert manager.in_flight == 0

    @pytest.mark.asyncio
    async def test_reloads_on_demand(self, manager: ResourceLifecycleManager, loader: FakeLoader, clock: Clock) -> None:
        await manager.select_local_backend(GEMMA)
        clock.now += 61
        assert await manager.check_idle()

        answer = await _chat(manager, "marketing budget")
        assert answer == "localanswer"
        assert loader.loads == [GEMMA, GEMMA]
        assert manager.is_ready


class TestChat:
    @pytest.mark.asyncio
    async def test_history_saved_and_replayed(
        self,
        manager: ResourceLifecycleManager,
        store: InMemoryStore,
        hosted: HostedFactory,
    ) -> None:
        await manager.select_hosted_backend(HostedChatConfig(api_key="sk", model="m"))
        assert await _chat(manager, "first") == "ok"
        assert await _chat(manager, "second") == "ok"

        backend = hosted.built[0]
        assert backend.calls[0].history == ()
        assert backend.calls[1].history == (Message(Role.USER, "first"), Message(Role.ASSISTANT, "ok"))

        saved = await store.get_chat_history("s1")
        assert [(m.role, m.content) for m in saved] == [
            ("user", "first"),
            ("assistant", "ok"),
            ("user", "second"),
            ("assistant", "ok"),
        ]

    @pytest.mark.asyncio
    async def test_empty_reply_not_saved(self, manager: ResourceLifecycleManager, store: InMemoryStore) -> None:
        await manager.select_hosted_backend(HostedChatConfig(api_key="sk", model="m"))
        assert manager.backend is not None
        manager.backend.responses = ["<think>nothing to say</think>"]  # type: ignore[attr-defined]
        assert await _chat(manager, "hello") == ""
        assert [m.role for m in await store.get_chat_history("s1")] == ["user"]

    @pytest.mark.asyncio
    async def test_scoped_chat_missing_transcript(self, manager: ResourceLifecycleManager) -> None:
        await manager.select_hosted_backend(HostedChatConfig(api_key="sk", model="m"))
        with pytest.raises(TranscriptNotFound):
            await _chat(manager, "hello", recording_id=999)


class TestIndexForwarding:
    @pytest.mark.asyncio
    async def test_index_unknown_recording(self, manager: ResourceLifecycleManager) -> None:
        with pytest.raises(TranscriptNotFound):
            await manager.index_recording(999)

    @pytest.mark.asyncio
    async def test_remove_and_reindex(self, manager: ResourceLifecycleManager) -> None:
        await manager.remove_recording(42)
        assert not manager.is_recording_indexed(42)
        await manager.index_recording(42)
        assert manager.is_recording_indexed(42)
        assert await manager.total_indexable_recordings() == 2

    @pytest.mark.asyncio
    async def test_search(self, manager: ResourceLifecycleManager) -> None:
        results = await manager.search("product launch", limit=2, recording_id=43)
        assert results and all(r.recording.id == 43 for r in results)


class SlowSaveStore(InMemoryStore):
    """Chat history writes take *delay* seconds."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    async def save_chat_message(self, message: ChatMessage) -> None:
        await asyncio.sleep(self.delay)
        await super().save_chat_message(message)


def _real_clock_manager(store: InMemoryStore, loader: FakeLoader, idle_timeout: float) -> ResourceLifecycleManager:
    index = VectorIndex(store, HashingEmbedder(), VectorStore(), poll_interval=0.01)
    return ResourceLifecycleManager(
        store,
        index,
        loader,
        HostedFactory(),
        idle_timeout=idle_timeout,
        poll_interval=0.01,
        init_wait_timeout=2.0,
        setup_wait_timeout=2.0,
        memory_reader=lambda: 64.0,
    )


class TestIdleTimer:
    @pytest.mark.asyncio
    async def test_background_timer_evicts(self, loader: FakeLoader) -> None:
        manager = _real_clock_manager(InMemoryStore(), loader, idle_timeout=0.05)
        try:
            await manager.select_local_backend(GEMMA)
            assert await wait_until(lambda: manager.status.state is ServiceState.SLEEPING, 0.01, 2.0)
            assert loader.handles[0].closed
            assert manager.backend is None
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_timer_cannot_fire_during_chat_setup(self, loader: FakeLoader) -> None:
        manager = _real_clock_manager(SlowSaveStore(delay=0.2), loader, idle_timeout=0.3)
        try:
            await manager.select_local_backend(GEMMA)
            await asyncio.sleep(0.15)

            assert await manager.chat_complete("hello", session_id="s1") == "localanswer"
            assert loader.loads == [GEMMA]
            assert not loader.handles[0].closed
            assert manager.is_ready

            # Re-armed once the chat finished.
            assert await wait_until(lambda: manager.status.state is ServiceState.SLEEPING, 0.01, 2.0)
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_generation_postpones_eviction(self, loader: FakeLoader) -> None:
        manager = _real_clock_manager(InMemoryStore(), loader, idle_timeout=0.2)
        try:
            await manager.select_local_backend(GEMMA)
            for _ in range(3):
                await asyncio.sleep(0.1)
                assert "".join([p async for p in manager.generate_stream("q")]) == "localanswer"
            assert manager.is_ready
            assert loader.loads == [GEMMA]
        finally:
            await manager.shutdown()


class TestStatusTransitions:
    @staticmethod
    def _record(manager: ResourceLifecycleManager, monkeypatch: pytest.MonkeyPatch) -> list[ServiceStatus]:
        seen: list[ServiceStatus] = []
        set_status = manager._set_status

        def record(status: ServiceStatus) -> None:
            seen.append(status)
            set_status(status)

        monkeypatch.setattr(manager, "_set_status", record)
        return seen

    @pytest.mark.asyncio
    async def test_download_then_load(
        self,
        manager: ResourceLifecycleManager,
        loader: FakeLoader,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        loader.cached = False
        seen = self._record(manager, monkeypatch)
        await manager.select_local_backend(GEMMA)

        states = [s.state for s in seen]
        assert states[0] is ServiceState.DOWNLOADING
        assert states[-2:] == [ServiceState.LOADING, ServiceState.READY]
        assert set(states[:-2]) == {ServiceState.DOWNLOADING}
        assert [s.progress for s in seen if s.state is ServiceState.DOWNLOADING] == [0.0, 0.0, 0.5]

    @pytest.mark.asyncio
    async def test_cached_model_skips_download(
        self,
        manager: ResourceLifecycleManager,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        seen = self._record(manager, monkeypatch)
        await manager.select_local_backend(GEMMA)
        assert [s.state for s in seen] == [ServiceState.LOADING, ServiceState.READY]


class TestChatMetadata:
    @pytest.mark.asyncio
    async def test_search_answers_save_citations(self, manager: ResourceLifecycleManager, store: InMemoryStore) -> None:
        await manager.select_hosted_backend(HostedChatConfig(api_key="sk", model="m"))
        await _chat(manager, "marketing budget")

        expected = await manager.search("marketing budget", limit=10)
        reply = (await store.get_chat_history("s1"))[-1]
        assert reply.role == "assistant"
        assert reply.citations == tuple(r.segment.id for r in expected)
        assert reply.citations

    @pytest.mark.asyncio
    async def test_scoped_answers_have_no_citations(self, manager: ResourceLifecycleManager, store: InMemoryStore) -> None:
        await manager.select_hosted_backend(HostedChatConfig(api_key="sk", model="m"))
        await _chat(manager, "Summarize", recording_id=42)
        assert (await store.get_chat_history("s1"))[-1].citations is None

    @pytest.mark.asyncio
    async def test_thinking_activity(self, manager: ResourceLifecycleManager) -> None:
        await manager.select_hosted_backend(HostedChatConfig(api_key="sk", model="m"))
        assert manager.backend is not None
        manager.backend.responses = ["<think>plan</think>Answer."]  # type: ignore[attr-defined]

        seen: list[str | None] = []
        stream = manager.chat("hello", session_id="s1")
        async for _ in stream:
            seen.append(manager.activity)
        assert manager.activity is None
        assert seen and all(a is None for a in seen)

    @pytest.mark.asyncio
    async def test_activity_visible_while_thinking(self, manager: ResourceLifecycleManager) -> None:
        await manager.select_hosted_backend(HostedChatConfig(api_key="sk", model="m"))
        assert manager.backend is not None
        manager.backend.responses = ["<think>plan</think>"]  # type: ignore[attr-defined]

        observed: list[str | None] = []
        set_activity = manager._set_activity

        def record(activity: str) -> None:
            set_activity(activity)
            observed.append(manager.activity)

        manager._set_activity = record  # type: ignore[method-assign]
        assert await _chat(manager, "hello") == ""
        assert observed == ["Thinking..."]
        assert manager.activity is None
