"""In-process generation backend and the loader that provides its model."""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import threading
from collections.abc import AsyncGenerator, Callable, Iterator, Sequence
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Protocol

from engram.backends.base import (
    GenerationBackend,
    GenerationParameters,
    Message,
    StopSequenceGuard,
    flatten_prompt,
)
from engram.backends.registry import cached_model_file, display_name, is_model_cached
from engram.errors import BackendUnavailable, categorize_error

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

_DONE = object()

# How often a blocked producer re-checks for cancellation.
_PUT_POLL_SECONDS = 0.1


def _log_producer_failure(future: asyncio.Future[None]) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.error("Local producer thread crashed: %s", future.exception())


class LocalModelHandle(Protocol):
    """A loaded model that can stream a completion for a flat prompt."""

    def stream_completion(self, prompt: str, params: GenerationParameters) -> Iterator[str]: ...

    def close(self) -> None: ...


class ModelLoader(Protocol):
    def is_available(self, model_id: str) -> bool:
        """True when the model can be loaded without downloading."""
        ...

    def load(self, model_id: str, on_progress: ProgressCallback | None = None) -> LocalModelHandle:
        """Download if needed, then load. Blocking; run it off the event loop."""
        ...


class LlamaCppHandle:
    """Wraps a ``llama_cpp.Llama`` instance."""

    def __init__(self, llm: Any, default_temperature: float = 0.7) -> None:
        self._llm = llm
        self._default_temperature = default_temperature

    def stream_completion(self, prompt: str, params: GenerationParameters) -> Iterator[str]:
        temperature = self._default_temperature if params.temperature is None else params.temperature
        stream = self._llm.create_completion(
            prompt,
            max_tokens=params.max_tokens,
            temperature=temperature,
            top_p=params.top_p,
            stop=list(params.stop_sequences) or None,
            stream=True,
        )
        for chunk in stream:
            text = chunk.get("choices", [{}])[0].get("text")
            if text:
                yield text

    def close(self) -> None:
        close = getattr(self._llm, "close", None)
        if close is not None:
            close()
        self._llm = None


def download_progress_bar(on_progress: ProgressCallback) -> type:
    """A tqdm class for huggingface-hub downloads that reports the completed fraction.

    Bytes are counted here rather than read from ``n`` because a disabled
    bar does not advance its own counter.
    """
    from huggingface_hub.utils import tqdm as hf_tqdm

    class _ProgressBar(hf_tqdm):
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            super().__init__(*args, **kwargs)
            self._received = 0

        def update(self, n: float | None = 1) -> bool | None:
            self._received += n or 0
            if self.total:
                on_progress(min(self._received / self.total, 1.0))
            return super().update(n)

    return _ProgressBar


class LlamaCppModelLoader:
    """Loads GGUF models from the Hugging Face hub with llama-cpp-python.

    Both libraries are optional installs (the ``local`` extra) and are
    imported only when a model is actually loaded. *filename* is a glob
    matched against the repository's files.
    """

    def __init__(
        self,
        cache_dir: str = "~/.cache/huggingface/hub",
        filename: str = "*Q4_K_M.gguf",
        n_ctx: int = 4096,
    ) -> None:
        self.cache_dir = str(Path(cache_dir).expanduser())
        self.filename = filename
        self.n_ctx = n_ctx

    def is_available(self, model_id: str) -> bool:
        return is_model_cached(model_id, self.cache_dir, self.filename)

    def _resolve_filename(self, model_id: str) -> str:
        cached = cached_model_file(model_id, self.cache_dir, self.filename)
        if cached is not None:
            return cached

        from huggingface_hub import HfApi

        matches = sorted(f for f in HfApi().list_repo_files(model_id) if fnmatch(f, self.filename))
        if not matches:
            raise BackendUnavailable(f"No file matching {self.filename} in {model_id}.")
        return matches[0]

    def load(self, model_id: str, on_progress: ProgressCallback | None = None) -> LocalModelHandle:
        if importlib.util.find_spec("llama_cpp") is None:
            raise BackendUnavailable(
                "llama-cpp-python is not installed. Install the 'local' extra to run models locally."
            )
        if importlib.util.find_spec("huggingface_hub") is None:
            raise BackendUnavailable("huggingface-hub is required to fetch local models.")

        from huggingface_hub import hf_hub_download
        from llama_cpp import Llama

        filename = self._resolve_filename(model_id)
        logger.info("Fetching local model %s (%s)", model_id, filename)
        model_path = hf_hub_download(
            repo_id=model_id,
            filename=filename,
            cache_dir=self.cache_dir,
            tqdm_class=download_progress_bar(on_progress) if on_progress is not None else None,
        )
        if on_progress is not None:
            on_progress(1.0)

        logger.info("Loading %s", model_path)
        llm = Llama(model_path=model_path, n_ctx=self.n_ctx, verbose=False)
        return LlamaCppHandle(llm)


class LocalBackend(GenerationBackend):
    """Runs generation on an in-process model handle.

    The handle's blocking iterator runs in a worker thread that feeds a
    bounded queue; the async side drains it. Each call is a fresh completion
    with no state carried between calls.
    """

    is_local = True

    def __init__(
        self,
        model_id: str,
        handle: LocalModelHandle,
        token_delay: float = 0.0,
        queue_size: int = 64,
    ) -> None:
        self.model_id = model_id
        self.token_delay = token_delay
        self.queue_size = queue_size
        self._handle: LocalModelHandle | None = handle
        # The model is not safe to drive from two threads at once.
        self._model_lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return display_name(self.model_id)

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    def _produce(
        self,
        prompt: str,
        params: GenerationParameters,
        queue: asyncio.Queue[Any],
        loop: asyncio.AbstractEventLoop,
        cancel: threading.Event,
    ) -> None:
        def put(item: Any) -> bool:
            future = asyncio.run_coroutine_threadsafe(queue.put(item), loop)
            while True:
                try:
                    future.result(timeout=_PUT_POLL_SECONDS)
                    return True
                except TimeoutError:
                    if cancel.is_set():
                        future.cancel()
                        return False

        try:
            with self._model_lock:
                handle = self._handle
                if handle is None:
                    put(BackendUnavailable("Local model is not loaded."))
                    return
                for piece in handle.stream_completion(prompt, params):
                    if cancel.is_set() or not put(piece):
                        return
        except Exception as exc:
            logger.exception("Local generation failed")
            put(exc)
        finally:
            if not cancel.is_set():
                put(_DONE)

    async def generate_stream(
        self,
        prompt: str,
        context: str,
        system_prompt: str | None = None,
        history: Sequence[Message] = (),
        params: GenerationParameters = GenerationParameters(),
    ) -> AsyncGenerator[str, None]:
        if self._handle is None:
            raise BackendUnavailable("Local model is not loaded.")

        full_prompt = flatten_prompt(prompt, context, system_prompt)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.queue_size)
        cancel = threading.Event()
        guard = StopSequenceGuard(params.stop_sequences)
        char_cap = params.max_tokens * 4
        received = 0

        producer = loop.run_in_executor(None, self._produce, full_prompt, params, queue, loop, cancel)
        producer.add_done_callback(_log_producer_failure)
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, BackendUnavailable):
                    raise item
                if isinstance(item, BaseException):
                    raise BackendUnavailable(categorize_error(item)) from item

                received += len(item)
                released = guard.feed(item)
                if released:
                    yield released
                if guard.stopped or received >= char_cap:
                    break
                if self.token_delay > 0:
                    await asyncio.sleep(self.token_delay)

            tail = guard.finish()
            if tail:
                yield tail
        finally:
            cancel.set()

    async def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await asyncio.to_thread(self._close_handle, handle)
            logger.info("Unloaded local model %s", self.model_id)

    def _close_handle(self, handle: LocalModelHandle) -> None:
        with self._model_lock:
            handle.close()
