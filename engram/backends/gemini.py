"""Hosted backend for Gemini's turn-structured streaming API."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, Sequence
from typing import Any

import httpx

from engram.backends.base import (
    GenerationBackend,
    GenerationParameters,
    HostedGeminiConfig,
    Message,
    Role,
    StopSequenceGuard,
    system_with_context,
)
from engram.backends.sse import stream_sse_data

logger = logging.getLogger(__name__)

# Gemini rejects requests with more stop sequences than this.
MAX_STOP_SEQUENCES = 5


def build_contents(prompt: str, history: Sequence[Message]) -> list[dict[str, Any]]:
    """Ordered conversation turns; assistant turns use Gemini's ``model`` role."""
    contents: list[dict[str, Any]] = []
    for message in history:
        if message.role is Role.SYSTEM:
            continue
        role = "model" if message.role is Role.ASSISTANT else "user"
        contents.append({"role": role, "parts": [{"text": message.content}]})
    contents.append({"role": "user", "parts": [{"text": prompt}]})
    return contents


def extract_text(data: str) -> str | None:
    """Concatenate ``candidates[0].content.parts[*].text`` from one frame."""
    try:
        frame = json.loads(data)
        parts = frame["candidates"][0]["content"]["parts"]
        text = "".join(p.get("text", "") for p in parts)
    except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
        logger.debug("Skipping malformed Gemini frame: %.200s", data)
        return None
    return text or None


class HostedGeminiBackend(GenerationBackend):
    """Streams from ``{base_url}/v1beta/models/{model}:streamGenerateContent``.

    The stream has no end marker; it finishes when the server closes the
    connection.
    """

    is_local = False

    def __init__(
        self,
        config: HostedGeminiConfig,
        client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
        error_body_limit: int = 500,
    ) -> None:
        self.config = config
        self.error_body_limit = error_body_limit
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout or httpx.Timeout(60.0, connect=10.0))

    @property
    def model_name(self) -> str:
        return self.config.model

    @property
    def endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        return f"{base}/v1beta/models/{self.config.model}:streamGenerateContent?alt=sse"

    def _payload(
        self,
        prompt: str,
        context: str,
        system_prompt: str | None,
        history: Sequence[Message],
        params: GenerationParameters,
    ) -> dict[str, Any]:
        generation_config: dict[str, Any] = {
            "temperature": self.config.temperature if params.temperature is None else params.temperature,
            "topP": params.top_p,
            "maxOutputTokens": params.max_tokens,
        }
        if params.stop_sequences:
            generation_config["stopSequences"] = list(params.stop_sequences[:MAX_STOP_SEQUENCES])
        return {
            "systemInstruction": {"parts": [{"text": system_with_context(system_prompt, context)}]},
            "contents": build_contents(prompt, history),
            "generationConfig": generation_config,
        }

    async def generate_stream(
        self,
        prompt: str,
        context: str,
        system_prompt: str | None = None,
        history: Sequence[Message] = (),
        params: GenerationParameters = GenerationParameters(),
    ) -> AsyncGenerator[str, None]:
        headers = {
            "x-goog-api-key": self.config.api_key,
            "Content-Type": "application/json",
        }
        guard = StopSequenceGuard(params.stop_sequences)
        logger.debug("Starting Gemini stream (model=%s)", self.config.model)

        frames = stream_sse_data(
            self._client,
            self.endpoint,
            headers=headers,
            payload=self._payload(prompt, context, system_prompt, history, params),
            error_body_limit=self.error_body_limit,
        )
        try:
            async for data in frames:
                text = extract_text(data)
                if not text:
                    continue
                released = guard.feed(text)
                if released:
                    yield released
                if guard.stopped:
                    break
            tail = guard.finish()
            if tail:
                yield tail
        finally:
            await frames.aclose()

        logger.debug("Gemini stream complete, length: %d", len(guard.text))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
