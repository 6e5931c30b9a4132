"""Semantic search over transcript segments."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence

from engram.errors import EngramError, NotInitialized, VectorIndexError
from engram.ingestion.embeddings import Embedder
from engram.ingestion.models import Recording, SearchResult, Segment, Transcript, format_time
from engram.ingestion.storage import Store
from engram.retrieval.vector_store import VectorStore
from engram.service.coordination import wait_until

logger = logging.getLogger(__name__)

NO_CONTEXT_MESSAGE = "No relevant meeting content found."


def document_id(segment_id: int, recording_id: int, transcript_id: int) -> uuid.UUID:
    """Deterministic vector-document id for a segment.

    Packs the ids into the UUID text layout ``SSSSSSSS-ssss-4sss-8rrr-TTTTTTTTTTTT``:
    the low 32 bits of the segment id, the next 16 bits, then its top 12 bits
    behind the version nibble; the low 14 bits of the recording id behind the
    variant bits; and the low 48 bits of the transcript id. The same inputs
    always yield the same id, so persisted documents can be re-associated with
    their segments after a restart without re-embedding.
    """
    return uuid.UUID(
        f"{segment_id & 0xFFFFFFFF:08X}"
        f"-{(segment_id >> 32) & 0xFFFF:04X}"
        f"-{0x4000 | ((segment_id >> 48) & 0x0FFF):04X}"
        f"-{0x8000 | (recording_id & 0x3FFF):04X}"
        f"-{transcript_id & 0xFFFFFFFFFFFF:012X}"
    )


def segment_text(segment: Segment) -> str:
    """Text that gets embedded for a segment, with speaker attribution."""
    return f"[{segment.speaker}] {segment.text}"


def build_context(results: Sequence[SearchResult]) -> str:
    """Format search results as a context block for generation."""
    if not results:
        return NO_CONTEXT_MESSAGE
    parts = [
        f"[Recording: {r.recording.title}]\n"
        f"[Speaker: {r.segment.speaker}] [Time: {format_time(r.segment.start_time)}]\n"
        f"{r.segment.text}"
        for r in results
    ]
    return "\n\n".join(parts)


class VectorIndex:
    """Maps transcript segments to vector documents and answers semantic queries.

    A recording counts as indexed only once every one of its segments has a
    live document. Mutations are serialised by a single lock.
    """

    def __init__(
        self,
        store: Store,
        embedder: Embedder,
        vector_store: VectorStore | None = None,
        batch_size: int = 32,
        min_similarity: float = 0.1,
        poll_interval: float = 0.5,
        init_timeout: float = 120.0,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._vectors = vector_store if vector_store is not None else VectorStore()
        self.batch_size = batch_size
        self.min_similarity = min_similarity
        self.poll_interval = poll_interval
        self.init_timeout = init_timeout

        self._lock = asyncio.Lock()
        self._initialized = False
        self._initializing = False
        self._doc_to_segment: dict[uuid.UUID, tuple[int, int]] = {}  # doc -> (recording, segment)
        self._segment_to_doc: dict[int, uuid.UUID] = {}
        self._indexed: set[int] = set()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def indexed_recordings_count(self) -> int:
        return len(self._indexed)

    @property
    def document_count(self) -> int:
        return len(self._doc_to_segment)

    def is_recording_indexed(self, recording_id: int) -> bool:
        return recording_id in self._indexed

    def document_for_segment(self, segment_id: int) -> uuid.UUID | None:
        return self._segment_to_doc.get(segment_id)

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitialized()

    def _map(self, doc_id: uuid.UUID, recording_id: int, segment_id: int) -> None:
        self._doc_to_segment[doc_id] = (recording_id, segment_id)
        self._segment_to_doc[segment_id] = doc_id

    async def initialize(self) -> None:
        """Load persisted documents and restore segment mappings.

        Safe to call repeatedly. A caller arriving while another
        initialization runs waits for it instead of starting a second one.
        """
        if self._initialized:
            return
        if self._initializing:
            logger.debug("Index initialization already in progress, waiting")
            await wait_until(
                lambda: self._initialized or not self._initializing,
                self.poll_interval,
                self.init_timeout,
            )
            return

        self._initializing = True
        started = time.monotonic()
        try:
            async with self._lock:
                persisted = await asyncio.to_thread(self._vectors.load)
                added = await self._restore_mappings()
                self._initialized = True
        except EngramError:
            raise
        except Exception as exc:
            logger.error("Failed to initialize vector index: %s", exc)
            raise VectorIndexError(f"Initialization failed: {exc}") from exc
        finally:
            self._initializing = False

        logger.info(
            "Vector index ready in %.2fs: %d recordings (%d documents persisted, %d added)",
            time.monotonic() - started,
            len(self._indexed),
            persisted,
            added,
        )

    async def _restore_mappings(self) -> int:
        existing = self._vectors.document_ids()
        added = 0

        for recording in await self._store.get_all_recordings():
            if not recording.has_transcript:
                continue
            transcript = await self._store.get_transcript(recording.id)
            if transcript is None:
                continue
            segments = await self._store.get_segments(transcript.id)
            if not segments:
                continue

            missing: list[tuple[uuid.UUID, Segment]] = []
            for segment in segments:
                doc_id = document_id(segment.id, recording.id, transcript.id)
                if doc_id in existing:
                    self._map(doc_id, recording.id, segment.id)
                else:
                    missing.append((doc_id, segment))

            if missing:
                try:
                    added += await self._add_missing(recording, transcript, missing)
                except Exception as exc:
                    logger.warning(
                        "Could not restore %d documents for recording %d: %s",
                        len(missing),
                        recording.id,
                        exc,
                    )
                    continue

            self._indexed.add(recording.id)
        return added

    async def _add_missing(
        self,
        recording: Recording,
        transcript: Transcript,
        missing: list[tuple[uuid.UUID, Segment]],
    ) -> int:
        saved = await self._store.get_embeddings(transcript.id)
        to_embed = [(d, s) for d, s in missing if s.id not in saved]
        fresh: dict[int, list[float]] = {}
        if to_embed:
            vectors = await self._embedder.embed_batch([segment_text(s) for _, s in to_embed])
            fresh = {s.id: v for (_, s), v in zip(to_embed, vectors, strict=True)}

        documents = [(d, saved.get(s.id) or fresh[s.id]) for d, s in missing]
        await asyncio.to_thread(self._vectors.add, documents)
        for doc_id, segment in missing:
            self._map(doc_id, recording.id, segment.id)
        for segment_id, vector in fresh.items():
            await self._store.save_embedding(segment_id, vector, self._embedder.model_name)
        return len(missing)

    async def index_recording(
        self,
        recording: Recording,
        transcript: Transcript,
        segments: Sequence[Segment],
    ) -> None:
        """Embed and add every segment of a recording.

        Segments go in batches; a failing batch raises and leaves earlier
        batches in place. Re-indexing an indexed recording does nothing.

        Raises:
            NotInitialized: If :meth:`initialize` has not completed.
            VectorIndexError: If embedding or storing a batch fails.
        """
        self._require_initialized()
        if not segments:
            logger.warning("No segments to index for recording %d", recording.id)
            return

        async with self._lock:
            if recording.id in self._indexed:
                logger.debug("Recording %d already indexed, skipping", recording.id)
                return

            logger.info("Indexing recording %d: %d segments", recording.id, len(segments))
            started = time.monotonic()
            for start in range(0, len(segments), self.batch_size):
                batch = segments[start : start + self.batch_size]
                doc_ids = [document_id(s.id, recording.id, transcript.id) for s in batch]
                try:
                    vectors = await self._embedder.embed_batch([segment_text(s) for s in batch])
                    await asyncio.to_thread(self._vectors.add, list(zip(doc_ids, vectors, strict=True)))
                    for doc_id, segment in zip(doc_ids, batch, strict=True):
                        self._map(doc_id, recording.id, segment.id)
                    for segment, vector in zip(batch, vectors, strict=True):
                        await self._store.save_embedding(segment.id, vector, self._embedder.model_name)
                except Exception as exc:
                    logger.error("Indexing failed for recording %d: %s", recording.id, exc)
                    raise VectorIndexError(f"Indexing failed: {exc}") from exc

            self._indexed.add(recording.id)
            logger.info(
                "Indexed recording %d in %.2fs (%d segments)",
                recording.id,
                time.monotonic() - started,
                len(segments),
            )

    async def search(
        self,
        query: str,
        limit: int = 5,
        recording_filter: int | None = None,
    ) -> list[SearchResult]:
        """Find the segments most similar to *query*.

        Args:
            query: Natural-language query. Blank queries return no results.
            limit: Maximum number of results.
            recording_filter: Restrict results to this recording.

        Returns:
            Results ordered by descending similarity.
        """
        self._require_initialized()
        query = query.strip()
        if not query:
            return []

        top_k = limit * 2 if recording_filter is not None else limit
        try:
            vector = await self._embedder.embed(query)
            hits = await asyncio.to_thread(self._vectors.search, vector, top_k, self.min_similarity)
        except Exception as exc:
            logger.error("Search failed: %s", exc)
            raise VectorIndexError(f"Search failed: {exc}") from exc

        results: list[SearchResult] = []
        recordings: dict[int, Recording | None] = {}
        segments: dict[int, dict[int, Segment]] = {}
        for doc_id, score in hits:
            location = self._doc_to_segment.get(doc_id)
            if location is None:
                logger.warning("Unknown document id %s", doc_id)
                continue
            recording_id, segment_id = location
            if recording_filter is not None and recording_id != recording_filter:
                continue

            try:
                if recording_id not in recordings:
                    recordings[recording_id] = await self._store.get_recording(recording_id)
                    segments[recording_id] = await self._segments_by_id(recording_id)
            except Exception as exc:
                raise VectorIndexError(f"Search failed: {exc}") from exc

            recording = recordings[recording_id]
            segment = segments[recording_id].get(segment_id)
            if recording is None or segment is None:
                logger.warning("Document %s points at a missing segment %d", doc_id, segment_id)
                continue

            results.append(SearchResult(segment=segment, recording=recording, score=score))
            if len(results) >= limit:
                break

        logger.debug("Search for %r returned %d results", query, len(results))
        return results

    async def _segments_by_id(self, recording_id: int) -> dict[int, Segment]:
        transcript = await self._store.get_transcript(recording_id)
        if transcript is None:
            return {}
        return {s.id: s for s in await self._store.get_segments(transcript.id)}

    async def remove_recording(self, recording_id: int) -> None:
        """Delete one recording's documents, mappings and stored embeddings."""
        self._require_initialized()
        async with self._lock:
            doc_ids = [d for d, (rec, _) in self._doc_to_segment.items() if rec == recording_id]
            try:
                if doc_ids:
                    await asyncio.to_thread(self._vectors.delete, doc_ids)
                transcript = await self._store.get_transcript(recording_id)
                if transcript is not None:
                    await self._store.delete_embeddings(transcript.id)
            except Exception as exc:
                raise VectorIndexError(f"Failed to remove recording: {exc}") from exc

            for doc_id in doc_ids:
                _, segment_id = self._doc_to_segment.pop(doc_id)
                self._segment_to_doc.pop(segment_id, None)
            self._indexed.discard(recording_id)
        logger.info("Removed recording %d from index (%d documents)", recording_id, len(doc_ids))

    async def rebuild_index(self) -> int:
        """Clear everything and re-index every recording with a transcript.

        Returns:
            Number of recordings indexed.
        """
        self._require_initialized()
        logger.info("Rebuilding vector index")
        async with self._lock:
            self._indexed.clear()
            self._doc_to_segment.clear()
            self._segment_to_doc.clear()
            try:
                await asyncio.to_thread(self._vectors.reset)
            except Exception as exc:
                raise VectorIndexError(f"Rebuild failed: {exc}") from exc

        for recording in await self._store.get_all_recordings():
            if not recording.has_transcript:
                continue
            transcript = await self._store.get_transcript(recording.id)
            if transcript is None:
                continue
            await self.index_recording(recording, transcript, await self._store.get_segments(transcript.id))
        return len(self._indexed)

    async def total_indexable_recordings(self) -> int:
        """Recordings with a completed transcript."""
        return sum(1 for r in await self._store.get_all_recordings() if r.has_transcript)
