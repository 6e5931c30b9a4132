"""Map-reduce synthesis over transcript chunks too long for one prompt."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from engram.backends.base import GenerationBackend
from engram.ingestion.models import Chunk
from engram.retrieval.generation import combine_sections, map_prompt, reduce_prompt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkSummary:
    chunk_id: uuid.UUID
    time_window: str
    summary: str


class MapReduceSummarizer:
    """Answers a query over many chunks: one extraction per chunk, then one synthesis.

    Chunks are processed one at a time in chronological order. Any failure
    aborts the whole run and propagates unchanged.
    """

    def __init__(self, backend: GenerationBackend) -> None:
        self.backend = backend

    async def map_chunks(self, chunks: Sequence[Chunk], query: str) -> list[ChunkSummary]:
        summaries: list[ChunkSummary] = []
        for chunk in chunks:
            text = await self.backend.generate(map_prompt(chunk.time_window, query), chunk.text)
            summaries.append(ChunkSummary(chunk.id, chunk.time_window, text))
            logger.debug("Processed chunk %s", chunk.time_window)
        return summaries

    async def reduce(self, summaries: Sequence[ChunkSummary], query: str) -> str:
        """Merge per-chunk summaries into one answer.

        A single summary is returned as is, without another generation call.
        """
        if not summaries:
            return ""
        if len(summaries) == 1:
            return summaries[0].summary
        context = combine_sections([(s.time_window, s.summary) for s in summaries])
        return await self.backend.generate(reduce_prompt(query), context)

    async def run(self, chunks: Sequence[Chunk], query: str) -> str:
        logger.info("Executing map-reduce with %d chunks", len(chunks))
        summaries = await self.map_chunks(chunks, query)
        return await self.reduce(summaries, query)
