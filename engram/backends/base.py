"""Generation backend contract shared by the local and hosted variants."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass
from enum import StrEnum


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant for Engram, a meeting transcription application. "
    "Your role is to answer questions about meeting content based on the provided context. "
    "Be concise, accurate, and helpful. If the context doesn't contain enough information "
    "to answer the question, say so honestly. Focus on extracting actionable insights, "
    "key decisions, and important details from the meetings."
)

CONTEXT_HEADER = "Relevant context from the meeting transcript:"


def system_with_context(system_prompt: str | None, context: str) -> str:
    """System prompt with the retrieved context appended, if any."""
    system = system_prompt or DEFAULT_SYSTEM_PROMPT
    if not context:
        return system
    return f"{system}\n\n{CONTEXT_HEADER}\n{context}"


def flatten_prompt(prompt: str, context: str, system_prompt: str | None) -> str:
    """Single-string prompt for completion-style models with no chat roles."""
    return f"{system_with_context(system_prompt, context)}\n\nUser question: {prompt}"


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A single conversation turn passed to a backend as history."""

    role: Role
    content: str

    def to_api_format(self) -> dict[str, str]:
        return {"role": str(self.role), "content": self.content}


@dataclass(frozen=True)
class GenerationParameters:
    """Sampling controls for one generation call."""

    max_tokens: int = 2048
    temperature: float | None = None  # None uses the backend default
    top_p: float = 0.9
    stop_sequences: tuple[str, ...] = ()


@dataclass(frozen=True)
class LocalBackendConfig:
    model_id: str


@dataclass(frozen=True)
class HostedChatConfig:
    """OpenAI-compatible chat completions provider."""

    api_key: str
    model: str
    base_url: str = "https://api.openai.com"
    temperature: float = 0.7


@dataclass(frozen=True)
class HostedGeminiConfig:
    """Gemini ``streamGenerateContent`` provider."""

    api_key: str
    model: str
    base_url: str = "https://generativelanguage.googleapis.com"
    temperature: float = 0.7


BackendConfig = LocalBackendConfig | HostedChatConfig | HostedGeminiConfig


class StopSequenceGuard:
    """Gates streamed text so nothing at or after a stop sequence is released.

    Matching runs against the cumulative output, so a stop sequence split
    across increments is still found. The last ``len(longest_stop) - 1``
    characters stay withheld until later text rules a match in or out.
    """

    def __init__(self, stop_sequences: Sequence[str]) -> None:
        self._stops = [s for s in stop_sequences if s]
        self._holdback = max((len(s) for s in self._stops), default=1) - 1
        self._output = ""
        self._emitted = 0
        self.stopped = False

    def feed(self, text: str) -> str:
        """Append *text* and return the portion that is now safe to display."""
        if self.stopped:
            return ""
        self._output += text

        match_at = -1
        for stop in self._stops:
            idx = self._output.find(stop, self._emitted)
            if idx != -1 and (match_at == -1 or idx < match_at):
                match_at = idx
        if match_at != -1:
            self.stopped = True
            released = self._output[self._emitted : match_at]
            self._emitted = match_at
            return released

        safe_end = max(self._emitted, len(self._output) - self._holdback)
        released = self._output[self._emitted : safe_end]
        self._emitted = safe_end
        return released

    def finish(self) -> str:
        """Release whatever is still withheld once the stream has ended."""
        if self.stopped:
            return ""
        released = self._output[self._emitted :]
        self._emitted = len(self._output)
        return released

    @property
    def text(self) -> str:
        """Everything released so far."""
        return self._output[: self._emitted]


class GenerationBackend(ABC):
    """A source of streamed text for a prompt plus retrieved context.

    Implementations raise :class:`engram.errors.EngramError` subclasses and
    stop cleanly when the consumer abandons the stream.
    """

    #: Whether the backend runs in-process. Decides the chunking budget and
    #: whether idle eviction applies.
    is_local: bool = False

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Display name of the model behind this backend."""

    @abstractmethod
    def generate_stream(
        self,
        prompt: str,
        context: str,
        system_prompt: str | None = None,
        history: Sequence[Message] = (),
        params: GenerationParameters = GenerationParameters(),
    ) -> AsyncGenerator[str, None]:
        """Stream text increments for *prompt* answered against *context*."""

    async def generate(
        self,
        prompt: str,
        context: str,
        system_prompt: str | None = None,
        history: Sequence[Message] = (),
        params: GenerationParameters = GenerationParameters(),
    ) -> str:
        """Run :meth:`generate_stream` to completion and return the full text."""
        parts: list[str] = []
        async for piece in self.generate_stream(prompt, context, system_prompt, history, params):
            parts.append(piece)
        return "".join(parts)

    async def close(self) -> None:
        """Release any resources held by the backend."""
        return None
