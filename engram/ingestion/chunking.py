"""Token-bounded chunking of transcript segments for long-document generation."""

from __future__ import annotations

from collections.abc import Sequence

from engram.ingestion.models import Chunk, Segment, format_time
from engram.pipeline_config import ChunkingConfig


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 1 token ≈ 4 characters, rounded up.

    The router's fit/no-fit decision and the chunker share this heuristic so
    their budgets agree.
    """
    return (len(text) + 3) // 4


def needs_chunking(transcript_tokens: int, config: ChunkingConfig) -> bool:
    """Return True when a transcript does not fit the backend's budget.

    Args:
        transcript_tokens: Estimated tokens of the formatted transcript.
        config: Budget preset of the active backend.
    """
    return transcript_tokens > config.available_tokens


def format_segment_line(segment: Segment) -> str:
    """Render a segment as a ``[m:ss] speaker: text`` transcript line."""
    return f"[{format_time(segment.start_time)}] {segment.speaker}: {segment.text}"


def format_transcript(segments: Sequence[Segment]) -> str:
    """Render segments as a newline-separated transcript."""
    return "\n".join(format_segment_line(s) for s in segments)


def _overlap_tail(window: list[Segment], max_tokens: int) -> list[Segment]:
    """Take segments from the end of a window while they fit in *max_tokens*."""
    tail: list[Segment] = []
    tokens = 0
    for segment in reversed(window):
        seg_tokens = estimate_tokens(format_segment_line(segment) + "\n")
        if tokens + seg_tokens > max_tokens:
            break
        tail.insert(0, segment)
        tokens += seg_tokens
    return tail


def _close_window(window: list[Segment], recording_id: int) -> Chunk:
    lines = [format_segment_line(s) + "\n" for s in window]
    return Chunk(
        recording_id=recording_id,
        start_time=window[0].start_time,
        end_time=window[-1].end_time,
        text="".join(lines),
        segment_ids=tuple(s.id for s in window),
        estimated_tokens=sum(estimate_tokens(line) for line in lines),
    )


def chunk_segments(
    segments: Sequence[Segment],
    recording_id: int,
    config: ChunkingConfig,
) -> list[Chunk]:
    """Greedily pack chronologically ordered segments into overlapping windows.

    Each window holds at most ``config.chunk_budget`` estimated tokens, unless a
    single segment alone is larger. When the next segment would overflow, the
    window is closed and the next one is seeded with the closed window's tail
    segments, bounded by ``config.overlap_tokens``, so facts that straddle a
    boundary are visible on both sides. The final window is always emitted.

    Args:
        segments: Transcript segments in chronological order.
        recording_id: Recording the segments belong to.
        config: Budget preset of the active backend.

    Returns:
        Chunks in chronological order.
    """
    if not segments:
        return []

    budget = config.chunk_budget
    chunks: list[Chunk] = []
    window: list[Segment] = []
    window_tokens = 0

    for segment in segments:
        seg_tokens = estimate_tokens(format_segment_line(segment) + "\n")

        if window and window_tokens + seg_tokens > budget:
            chunks.append(_close_window(window, recording_id))
            window = _overlap_tail(window, config.overlap_tokens)
            window_tokens = sum(estimate_tokens(format_segment_line(s) + "\n") for s in window)
            # Drop the seed if it leaves no room for the incoming segment.
            while window and window_tokens + seg_tokens > budget:
                dropped = window.pop(0)
                window_tokens -= estimate_tokens(format_segment_line(dropped) + "\n")

        window.append(segment)
        window_tokens += seg_tokens

    chunks.append(_close_window(window, recording_id))
    return chunks
