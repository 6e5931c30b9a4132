"""Streaming filter for reasoning markers and final-answer formatting."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
THINKING_STATUS = "Thinking..."

# Tail withheld in NORMAL state so a split open marker is never displayed.
_HOLDBACK = len(THINK_OPEN)
_OPEN_MARKER = re.compile(re.escape(THINK_OPEN), re.IGNORECASE)
_CLOSE_MARKER = re.compile(re.escape(THINK_CLOSE), re.IGNORECASE)


class FilterState(StrEnum):
    NORMAL = "normal"
    THINKING = "thinking"


@dataclass(frozen=True)
class ProcessedOutput:
    """Result of feeding one increment through the filter."""

    display: str = ""
    is_thinking: bool = False
    status: str | None = None


class StreamPostProcessor:
    """Removes ``<think>...</think>`` spans from a token stream.

    Increments may split a marker anywhere, so the filter buffers just enough
    text to recognise a marker before releasing it for display. Matching is
    case-insensitive. Each reasoning span produces a single ``"Thinking..."``
    status so a presentation layer can show progress while text is withheld.
    """

    def __init__(self) -> None:
        self._state = FilterState.NORMAL
        self._buffer = ""

    @property
    def state(self) -> FilterState:
        return self._state

    def process(self, token: str) -> ProcessedOutput:
        self._buffer += token
        display: list[str] = []
        status: str | None = None

        while True:
            if self._state is FilterState.NORMAL:
                match = _OPEN_MARKER.search(self._buffer)
                if match is None:
                    if len(self._buffer) > _HOLDBACK:
                        display.append(self._buffer[:-_HOLDBACK])
                        self._buffer = self._buffer[-_HOLDBACK:]
                    break
                display.append(self._buffer[: match.start()])
                self._buffer = self._buffer[match.end() :]
                self._state = FilterState.THINKING
                status = THINKING_STATUS
            else:
                match = _CLOSE_MARKER.search(self._buffer)
                if match is None:
                    # Keep only what could still be the start of the close marker.
                    self._buffer = self._buffer[-(len(THINK_CLOSE) - 1) :]
                    break
                self._buffer = self._buffer[match.end() :]
                self._state = FilterState.NORMAL

        return ProcessedOutput(
            display="".join(display),
            is_thinking=self._state is FilterState.THINKING,
            status=status,
        )

    def flush(self) -> str:
        """Release buffered text at end of stream.

        An unterminated reasoning span is discarded.
        """
        remaining = "" if self._state is FilterState.THINKING else self._buffer
        self.reset()
        return remaining

    def reset(self) -> None:
        self._state = FilterState.NORMAL
        self._buffer = ""


_THINK_SPAN = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_STATUS_PHRASES: list[re.Pattern[str]] = [
    re.compile(r"\*Processing\.\.\.\*"),
    re.compile(r"Thinking\.\.\."),
    re.compile(r"Analyzing \d+ sections\.\.\."),
]
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_UNSPACED_NUMBERING = re.compile(r"^(\d+)\.([A-Za-z])", re.MULTILINE)


def strip_thinking(text: str) -> str:
    """Remove complete reasoning spans and leftover status phrases."""
    text = _THINK_SPAN.sub("", text)
    for pattern in _STATUS_PHRASES:
        text = pattern.sub("", text)
    return text


def format_response(text: str) -> str:
    """Clean an aggregated answer for display.

    Args:
        text: Full model output, possibly containing reasoning markers.

    Returns:
        Text with reasoning removed, blank lines collapsed, bullets normalised
        to ``-`` and list numbering spaced (``1.Foo`` -> ``1. Foo``).
    """
    text = strip_thinking(text)
    text = _EXCESS_NEWLINES.sub("\n\n", text).strip()
    text = text.replace("•", "-").replace("◦", "  -")
    return _UNSPACED_NUMBERING.sub(r"\1. \2", text)
