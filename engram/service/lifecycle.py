"""Owns the active generation backend: selection, readiness, idle eviction and chat."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Callable, Sequence
from contextlib import aclosing, asynccontextmanager

from engram.backends.base import (
    BackendConfig,
    GenerationBackend,
    GenerationParameters,
    HostedChatConfig,
    HostedGeminiConfig,
    LocalBackendConfig,
    Message,
    Role,
)
from engram.backends.local import LocalBackend, ModelLoader
from engram.backends.registry import (
    AVAILABLE_MODELS,
    ModelInfo,
    default_model,
    detect_available_memory_gb,
    display_name,
    estimated_memory_gb,
    suggest_smaller_model,
)
from engram.errors import (
    BackendUnavailable,
    EngramError,
    InsufficientResource,
    InvalidConfiguration,
    NotConfigured,
    TranscriptNotFound,
    categorize_error,
)
from engram.ingestion.models import ChatMessage, SearchResult
from engram.ingestion.storage import Store
from engram.retrieval.router import QueryRouter
from engram.retrieval.search import VectorIndex
from engram.service.coordination import wait_until
from engram.service.status import ServiceState, ServiceStatus

logger = logging.getLogger(__name__)

HostedConfig = HostedChatConfig | HostedGeminiConfig
HostedBackendFactory = Callable[[HostedConfig], GenerationBackend]


class ResourceLifecycleManager:
    """Single authority over which backend is active and whether it is ready.

    A local model is expensive to hold, so after ``idle_timeout`` seconds
    without generation it is unloaded and the status moves to SLEEPING. The
    next generation reloads it transparently.

    Args:
        store: Record store for transcripts and chat history.
        index: Vector index over transcript segments.
        loader: Loads local models.
        hosted_factory: Builds a hosted backend from its configuration.
        router: Query router; one is built over *store* and *index* if omitted.
        memory_reader: Returns available memory in GB, or None if unknown.
        clock: Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        store: Store,
        index: VectorIndex,
        loader: ModelLoader,
        hosted_factory: HostedBackendFactory,
        router: QueryRouter | None = None,
        *,
        idle_timeout: float = 300.0,
        poll_interval: float = 0.5,
        init_wait_timeout: float = 120.0,
        setup_wait_timeout: float = 120.0,
        memory_budget_fraction: float = 0.3,
        local_token_delay: float = 0.0,
        chat_history_window: int = 10,
        memory_reader: Callable[[], float | None] = detect_available_memory_gb,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._index = index
        self._loader = loader
        self._hosted_factory = hosted_factory
        self._router = router or QueryRouter(store, index)
        self.idle_timeout = idle_timeout
        self.poll_interval = poll_interval
        self.init_wait_timeout = init_wait_timeout
        self.setup_wait_timeout = setup_wait_timeout
        self.memory_budget_fraction = memory_budget_fraction
        self.local_token_delay = local_token_delay
        self.chat_history_window = chat_history_window
        self._memory_reader = memory_reader
        self._clock = clock

        self._lock = asyncio.Lock()
        self._status = ServiceStatus.not_configured()
        self._backend: GenerationBackend | None = None
        self._config: BackendConfig | None = None
        self._last_local_model: str | None = None
        self._initialized = False
        self._initializing = False
        self._setup_in_progress = False
        self._in_flight = 0
        self._last_activity = clock()
        self._idle_task: asyncio.Task[None] | None = None
        self._activity: str | None = None

    # -- state --------------------------------------------------------------

    @property
    def status(self) -> ServiceStatus:
        return self._status

    @property
    def is_ready(self) -> bool:
        return self._status.is_ready

    @property
    def config(self) -> BackendConfig | None:
        return self._config

    @property
    def backend(self) -> GenerationBackend | None:
        return self._backend

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def activity(self) -> str | None:
        """Progress status of the current generation while no text is shown, e.g. ``"Thinking..."``."""
        return self._activity

    @property
    def indexed_recordings_count(self) -> int:
        return self._index.indexed_recordings_count

    def _set_status(self, status: ServiceStatus) -> None:
        if status != self._status:
            logger.info("Service status: %s", status.description)
        self._status = status

    def available_models(self) -> list[ModelInfo]:
        return list(AVAILABLE_MODELS)

    def is_model_cached(self, model_id: str) -> bool:
        return self._loader.is_available(model_id)

    # -- initialization -----------------------------------------------------

    async def ensure_initialized(self) -> None:
        """Initialize the vector index once.

        Concurrent callers wait for the in-flight initialization rather than
        starting their own.
        """
        if self._initialized:
            return
        if self._initializing:
            logger.debug("Initialization already in progress, waiting")
            await wait_until(
                lambda: self._initialized or not self._initializing,
                self.poll_interval,
                self.init_wait_timeout,
            )
            return

        self._initializing = True
        try:
            await self._index.initialize()
            self._initialized = True
            logger.info("Engram service initialized")
        finally:
            self._initializing = False

    # -- backend selection --------------------------------------------------

    async def select_local_backend(self, model_id: str | None = None) -> None:
        """Load *model_id* in-process and make it the active backend.

        Raises:
            InsufficientResource: If the model needs more memory than the
                configured share of what is available.
            BackendUnavailable: If loading fails or another setup never finishes.
        """
        model_id = model_id or default_model().id
        if self._status.is_ready and self._config == LocalBackendConfig(model_id):
            return
        if self._setup_in_progress:
            logger.debug("Backend setup already in progress, waiting")
            finished = await wait_until(
                lambda: not self._setup_in_progress,
                self.poll_interval,
                self.setup_wait_timeout,
            )
            if not finished:
                raise BackendUnavailable("Another model setup is still in progress.")
            if self._status.is_ready and self._config == LocalBackendConfig(model_id):
                return

        self._setup_in_progress = True
        try:
            await self._setup_local(model_id)
        finally:
            self._setup_in_progress = False

    def _check_memory(self, model_id: str) -> None:
        required = estimated_memory_gb(model_id)
        available = self._memory_reader()
        if available is None:
            logger.warning("Could not check memory availability for %s", model_id)
            return
        usable = available * self.memory_budget_fraction
        logger.info("Memory check: %.1fGB usable, %.1fGB required", usable, required)
        if required <= usable:
            return

        suggestion = suggest_smaller_model(usable)
        if suggestion is not None:
            message = f"Not enough memory. Try {suggestion.display_name} instead."
        else:
            message = f"Not enough memory ({usable:.1f}GB available, {required:.1f}GB needed)"
        self._set_status(ServiceStatus.error(message))
        raise InsufficientResource(usable, required)

    async def _setup_local(self, model_id: str) -> None:
        await self.ensure_initialized()
        name = display_name(model_id)
        logger.info("Setting up local model %s", model_id)
        self._check_memory(model_id)

        self._cancel_idle_timer()
        await self._release_backend()

        cached = await asyncio.to_thread(self._loader.is_available, model_id)
        self._set_status(ServiceStatus.loading(name) if cached else ServiceStatus.downloading(0.0, name))

        loop = asyncio.get_running_loop()

        def on_progress(fraction: float) -> None:
            loop.call_soon_threadsafe(self._on_progress, name, fraction)

        try:
            handle = await asyncio.to_thread(self._loader.load, model_id, on_progress)
        except EngramError as exc:
            self._set_status(ServiceStatus.error(exc.user_message))
            raise
        except Exception as exc:
            message = categorize_error(exc)
            logger.error("Failed to load %s: %s", model_id, exc)
            self._set_status(ServiceStatus.error(message))
            raise BackendUnavailable(message) from exc

        async with self._lock:
            self._backend = LocalBackend(model_id, handle, token_delay=self.local_token_delay)
            self._config = LocalBackendConfig(model_id)
            self._last_local_model = model_id
            self._last_activity = self._clock()
            self._set_status(ServiceStatus.ready(name))
        self._arm_idle_timer()

    def _on_progress(self, name: str, fraction: float) -> None:
        if self._status.state is not ServiceState.DOWNLOADING:
            return
        if fraction >= 1.0:
            self._set_status(ServiceStatus.loading(name))
        else:
            self._set_status(ServiceStatus.downloading(fraction, name))

    async def select_hosted_backend(self, config: HostedConfig) -> None:
        """Switch to a hosted provider, releasing any local model.

        Raises:
            NotConfigured: If the API key is empty.
            InvalidConfiguration: If the model or base URL is blank.
        """
        if not config.api_key.strip():
            raise NotConfigured("An API key is required to use a hosted backend.")
        if not config.model.strip():
            raise InvalidConfiguration("A model name is required.")
        if not config.base_url.strip():
            raise InvalidConfiguration("A base URL is required.")

        await self.ensure_initialized()
        backend = self._hosted_factory(config)

        self._cancel_idle_timer()
        await self._release_backend()
        async with self._lock:
            self._backend = backend
            self._config = config
            self._set_status(ServiceStatus.ready(config.model))
        logger.info("Using hosted backend %s (%s)", type(config).__name__, config.model)

    async def unload(self) -> None:
        """Drop the active backend and forget the configuration."""
        self._cancel_idle_timer()
        await self._release_backend()
        async with self._lock:
            self._config = None
            self._last_local_model = None
            self._set_status(ServiceStatus.not_configured())

    async def shutdown(self) -> None:
        self._cancel_idle_timer()
        await self._release_backend()

    async def _release_backend(self) -> None:
        async with self._lock:
            backend, self._backend = self._backend, None
        if backend is not None:
            await backend.close()

    # -- idle eviction ------------------------------------------------------

    def _cancel_idle_timer(self) -> None:
        if self._idle_task is not None and not self._idle_task.done():
            self._idle_task.cancel()
        self._idle_task = None

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self._backend is None or not self._backend.is_local or not self._status.is_ready:
            return
        self._idle_task = asyncio.get_running_loop().create_task(self._idle_watch())

    async def _idle_watch(self) -> None:
        while True:
            remaining = self.idle_timeout - (self._clock() - self._last_activity)
            if remaining <= 0:
                await self.check_idle()
                return
            await asyncio.sleep(remaining)

    async def check_idle(self) -> bool:
        """Evict the local model if it has been idle long enough.

        Only a READY local backend with no generation in flight is evicted.

        Returns:
            True if the model was unloaded.
        """
        async with self._lock:
            backend = self._backend
            if (
                backend is None
                or not backend.is_local
                or not self._status.is_ready
                or self._in_flight > 0
                or self._clock() - self._last_activity < self.idle_timeout
            ):
                return False
            self._backend = None
            self._set_status(ServiceStatus.sleeping(backend.model_name))
        await backend.close()
        logger.info("Unloaded %s after %.0fs idle", backend.model_name, self.idle_timeout)
        return True

    # -- generation ---------------------------------------------------------

    async def _ready_backend(self) -> GenerationBackend:
        await self.ensure_initialized()
        if self._status.state is ServiceState.SLEEPING and self._last_local_model:
            logger.info("Reloading %s after idle eviction", self._last_local_model)
            await self.select_local_backend(self._last_local_model)
        elif self._setup_in_progress:
            await wait_until(lambda: not self._setup_in_progress, self.poll_interval, self.setup_wait_timeout)

        if self._status.state is ServiceState.ERROR:
            raise BackendUnavailable(self._status.message)
        if self._backend is None or not self._status.is_ready:
            raise NotConfigured()
        return self._backend

    @asynccontextmanager
    async def _track(self) -> AsyncIterator[None]:
        self._cancel_idle_timer()
        self._in_flight += 1
        self._last_activity = self._clock()
        try:
            yield
        finally:
            self._in_flight -= 1
            self._last_activity = self._clock()
            if self._in_flight == 0:
                self._arm_idle_timer()

    async def generate_stream(
        self,
        prompt: str,
        context: str = "",
        system_prompt: str | None = None,
        history: Sequence[Message] = (),
        params: GenerationParameters = GenerationParameters(),
    ) -> AsyncGenerator[str, None]:
        """Stream directly from the active backend, bypassing routing."""
        async with self._track():
            backend = await self._ready_backend()
            stream = backend.generate_stream(prompt, context, system_prompt, history, params)
            async with aclosing(stream):
                async for piece in stream:
                    yield piece

    async def _history(self, session_id: str) -> list[Message]:
        # The query just saved is the newest entry; leave it out.
        messages = await self._store.get_chat_history(session_id, limit=self.chat_history_window + 1)
        history: list[Message] = []
        for message in messages[:-1]:
            try:
                history.append(Message(Role(message.role), message.content))
            except ValueError:
                logger.debug("Skipping chat message with unknown role %r", message.role)
        return history[-self.chat_history_window :]

    def _set_activity(self, activity: str) -> None:
        logger.debug("Generation activity: %s", activity)
        self._activity = activity

    async def chat(
        self,
        query: str,
        recording_id: int | None = None,
        session_id: str = "default",
    ) -> AsyncGenerator[str, None]:
        """Answer *query*, streaming display-ready text.

        The exchange is saved to the session's chat history; the reply is
        saved only when the stream completes with non-empty text, together
        with the ids of the segments retrieved as context.
        """
        parts: list[str] = []
        cited: list[int] = []
        async with self._track():
            backend = await self._ready_backend()
            await self._store.save_chat_message(
                ChatMessage(session_id=session_id, role="user", content=query, recording_id=recording_id)
            )
            history = await self._history(session_id)

            stream = self._router.route(
                query,
                recording_id,
                backend,
                history,
                on_results=lambda results: cited.extend(r.segment.id for r in results),
                on_status=self._set_activity,
            )
            try:
                async with aclosing(stream):
                    async for piece in stream:
                        self._activity = None
                        parts.append(piece)
                        yield piece
            finally:
                self._activity = None

        response = "".join(parts)
        if response.strip():
            await self._store.save_chat_message(
                ChatMessage(
                    session_id=session_id,
                    role="assistant",
                    content=response,
                    recording_id=recording_id,
                    citations=tuple(cited) or None,
                )
            )

    async def chat_complete(
        self,
        query: str,
        recording_id: int | None = None,
        session_id: str = "default",
    ) -> str:
        parts = [piece async for piece in self.chat(query, recording_id, session_id)]
        return "".join(parts)

    # -- index forwarding ---------------------------------------------------

    async def index_recording(self, recording_id: int) -> None:
        await self.ensure_initialized()
        recording = await self._store.get_recording(recording_id)
        transcript = await self._store.get_transcript(recording_id)
        if recording is None or transcript is None:
            raise TranscriptNotFound(recording_id)
        segments = await self._store.get_segments(transcript.id)
        await self._index.index_recording(recording, transcript, segments)

    async def remove_recording(self, recording_id: int) -> None:
        await self.ensure_initialized()
        await self._index.remove_recording(recording_id)

    async def rebuild_index(self) -> int:
        await self.ensure_initialized()
        return await self._index.rebuild_index()

    async def search(
        self,
        query: str,
        limit: int = 5,
        recording_id: int | None = None,
    ) -> list[SearchResult]:
        await self.ensure_initialized()
        return await self._index.search(query, limit=limit, recording_filter=recording_id)

    async def total_indexable_recordings(self) -> int:
        return await self._index.total_indexable_recordings()

    def is_recording_indexed(self, recording_id: int) -> bool:
        return self._index.is_recording_indexed(recording_id)
