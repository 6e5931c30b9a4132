"""Query router: choose between retrieval, full-transcript and map-reduce answering."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from enum import StrEnum

from engram.backends.base import GenerationBackend, Message
from engram.errors import TranscriptNotFound
from engram.ingestion.chunking import chunk_segments, estimate_tokens, format_transcript, needs_chunking
from engram.ingestion.models import Chunk, SearchResult
from engram.ingestion.storage import Store
from engram.pipeline_config import chunking_config_for
from engram.retrieval.generation import (
    EMPTY_TRANSCRIPT_MESSAGE,
    RAG_SYSTEM_PROMPT,
    full_context_system_prompt,
)
from engram.retrieval.postprocess import StreamPostProcessor, format_response
from engram.retrieval.search import VectorIndex, build_context
from engram.retrieval.summarizer import MapReduceSummarizer

logger = logging.getLogger(__name__)

UNKNOWN_RECORDING_TITLE = "Unknown Recording"

StatusCallback = Callable[[str], None]
ResultsCallback = Callable[[Sequence[SearchResult]], None]


class StrategyKind(StrEnum):
    """How a query will be answered."""

    RAG_SEARCH = "rag_search"
    DIRECT_FULL_CONTEXT = "direct_full_context"
    MAP_REDUCE = "map_reduce"


@dataclass(frozen=True)
class AgentStrategy:
    """Result of strategy selection."""

    kind: StrategyKind
    transcript: str = ""  # formatted transcript, DIRECT_FULL_CONTEXT only
    recording_title: str = ""
    chunks: tuple[Chunk, ...] = ()  # MAP_REDUCE only


async def filter_stream(
    stream: AsyncGenerator[str, None],
    on_status: StatusCallback | None = None,
) -> AsyncGenerator[str, None]:
    """Pass a backend stream through the reasoning-marker filter.

    *on_status* receives the filter's status (``"Thinking..."``) each time a
    reasoning span opens.
    """
    processor = StreamPostProcessor()
    async with aclosing(stream):
        async for token in stream:
            output = processor.process(token)
            if output.status and on_status is not None:
                on_status(output.status)
            if output.display:
                yield output.display
    remaining = processor.flush()
    if remaining:
        yield remaining


class QueryRouter:
    """Picks an answering strategy per query and runs it against a backend."""

    def __init__(self, store: Store, index: VectorIndex, max_context_segments: int = 10) -> None:
        self._store = store
        self._index = index
        self.max_context_segments = max_context_segments

    async def determine_strategy(self, recording_id: int | None, backend: GenerationBackend) -> AgentStrategy:
        """Decide how to answer a query scoped to *recording_id*.

        With no recording, search across everything. With a recording, use
        the whole transcript when it fits the backend's budget and map-reduce
        over chunks when it does not.

        Raises:
            TranscriptNotFound: If the recording has no transcript.
        """
        if recording_id is None:
            logger.debug("No recording selected, using RAG search across all recordings")
            return AgentStrategy(StrategyKind.RAG_SEARCH)

        transcript = await self._store.get_transcript(recording_id)
        if transcript is None:
            raise TranscriptNotFound(recording_id)

        recording = await self._store.get_recording(recording_id)
        title = recording.title if recording is not None and recording.title else UNKNOWN_RECORDING_TITLE

        segments = await self._store.get_segments(transcript.id)
        formatted = format_transcript(segments)
        total_tokens = estimate_tokens(formatted)
        config = chunking_config_for(backend.is_local)
        logger.info("Transcript size: %d tokens, max: %d", total_tokens, config.max_tokens)

        if not needs_chunking(total_tokens, config):
            return AgentStrategy(
                StrategyKind.DIRECT_FULL_CONTEXT,
                transcript=formatted,
                recording_title=title,
            )

        chunks = chunk_segments(segments, recording_id, config)
        logger.info("Created %d chunks for map-reduce", len(chunks))
        return AgentStrategy(StrategyKind.MAP_REDUCE, recording_title=title, chunks=tuple(chunks))

    async def route(
        self,
        query: str,
        recording_id: int | None,
        backend: GenerationBackend,
        history: Sequence[Message] = (),
        *,
        on_results: ResultsCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> AsyncGenerator[str, None]:
        """Answer *query*, yielding display-ready text increments.

        Args:
            on_results: Receives the search results used as context. Called
                only for retrieval answers.
            on_status: Receives progress statuses that have no display text,
                such as ``"Thinking..."``.
        """
        strategy = await self.determine_strategy(recording_id, backend)
        logger.info("Routing query with strategy %s", strategy.kind)

        if strategy.kind is StrategyKind.RAG_SEARCH:
            results = await self._index.search(
                query, limit=self.max_context_segments, recording_filter=recording_id
            )
            logger.info("Search returned %d results", len(results))
            if on_results is not None:
                on_results(results)
            stream = backend.generate_stream(
                query, build_context(results), RAG_SYSTEM_PROMPT, history
            )
            async for piece in filter_stream(stream, on_status):
                yield piece

        elif strategy.kind is StrategyKind.DIRECT_FULL_CONTEXT:
            if not strategy.transcript.strip():
                yield EMPTY_TRANSCRIPT_MESSAGE
                return
            stream = backend.generate_stream(
                query,
                strategy.transcript,
                full_context_system_prompt(strategy.recording_title),
                history,
            )
            async for piece in filter_stream(stream, on_status):
                yield piece

        else:
            if on_status is not None:
                on_status(f"Analyzing {len(strategy.chunks)} sections...")
            answer = await MapReduceSummarizer(backend).run(strategy.chunks, query)
            for char in format_response(answer):
                yield char
