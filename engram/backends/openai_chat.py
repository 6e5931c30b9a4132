"""Hosted backend for OpenAI-compatible chat completion APIs."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, Sequence
from typing import Any

import httpx

from engram.backends.base import (
    GenerationBackend,
    GenerationParameters,
    HostedChatConfig,
    Message,
    Role,
    StopSequenceGuard,
    system_with_context,
)
from engram.backends.sse import stream_sse_data

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def build_chat_messages(
    prompt: str,
    context: str,
    system_prompt: str | None,
    history: Sequence[Message],
) -> list[dict[str, str]]:
    """System turn (with context), then prior turns, then the user query."""
    messages = [{"role": str(Role.SYSTEM), "content": system_with_context(system_prompt, context)}]
    messages.extend(m.to_api_format() for m in history)
    messages.append({"role": str(Role.USER), "content": prompt})
    return messages


def extract_delta(data: str) -> str | None:
    """Pull ``choices[0].delta.content`` out of one stream frame."""
    try:
        frame = json.loads(data)
        content = frame["choices"][0]["delta"].get("content")
    except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
        logger.debug("Skipping malformed chat frame: %.200s", data)
        return None
    return content if isinstance(content, str) else None


class HostedChatBackend(GenerationBackend):
    """Streams from ``{base_url}/v1/chat/completions``."""

    is_local = False

    def __init__(
        self,
        config: HostedChatConfig,
        client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout or httpx.Timeout(60.0, connect=10.0))

    @property
    def model_name(self) -> str:
        return self.config.model

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/v1/chat/completions"

    def _payload(self, messages: list[dict[str, str]], params: GenerationParameters) -> dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": messages,
            "max_tokens": params.max_tokens,
            "temperature": self.config.temperature if params.temperature is None else params.temperature,
            "top_p": params.top_p,
            "stream": True,
        }

    async def generate_stream(
        self,
        prompt: str,
        context: str,
        system_prompt: str | None = None,
        history: Sequence[Message] = (),
        params: GenerationParameters = GenerationParameters(),
    ) -> AsyncGenerator[str, None]:
        messages = build_chat_messages(prompt, context, system_prompt, history)
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        guard = StopSequenceGuard(params.stop_sequences)
        logger.debug("Starting chat stream to %s (model=%s)", self.endpoint, self.config.model)

        frames = stream_sse_data(
            self._client, self.endpoint, headers=headers, payload=self._payload(messages, params)
        )
        try:
            async for data in frames:
                if data == DONE_SENTINEL:
                    break
                content = extract_delta(data)
                if not content:
                    continue
                released = guard.feed(content)
                if released:
                    yield released
                if guard.stopped:
                    break
            tail = guard.finish()
            if tail:
                yield tail
        finally:
            await frames.aclose()

        logger.debug("Chat stream complete, length: %d", len(guard.text))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
