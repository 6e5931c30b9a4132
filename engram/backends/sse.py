"""Server-sent-event streaming over httpx for the hosted backends."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from engram.errors import GenerationTimeout, NetworkError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"


def parse_data_line(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for any other line.

    Comments, ``event:``/``id:`` fields and blank keep-alive lines are ignored.
    """
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX) :].strip()


async def stream_sse_data(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str],
    payload: dict[str, Any],
    error_body_limit: int = 0,
) -> AsyncGenerator[str, None]:
    """POST *payload* and yield the payload of every ``data:`` line.

    The response is opened inside ``async with`` so abandoning the iterator
    closes the connection.

    Args:
        client: Shared async HTTP client.
        url: Streaming endpoint.
        headers: Request headers, including credentials.
        payload: JSON request body.
        error_body_limit: How many characters of a non-200 body to include
            in the raised error. Zero omits the body.

    Raises:
        NetworkError: On a non-200 status or a transport failure.
        GenerationTimeout: When the provider does not respond in time.
    """
    try:
        async with client.stream("POST", url, headers=headers, json=payload) as response:
            if response.status_code != 200:
                reason = f"HTTP {response.status_code}"
                if error_body_limit > 0:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    if body:
                        reason = f"{reason}: {body[:error_body_limit]}"
                logger.warning("Streaming request to %s failed: %s", url, reason)
                raise NetworkError(reason, status_code=response.status_code)

            async for line in response.aiter_lines():
                data = parse_data_line(line)
                if data:
                    yield data
    except httpx.TimeoutException as exc:
        raise GenerationTimeout() from exc
    except httpx.TransportError as exc:
        raise NetworkError(str(exc) or type(exc).__name__) from exc
