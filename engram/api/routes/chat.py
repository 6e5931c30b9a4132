"""Chat endpoint: stream an answer for a query, optionally scoped to a recording."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from engram.api.dependencies import get_manager
from engram.api.models import ChatRequest
from engram.service.lifecycle import ResourceLifecycleManager

router = APIRouter()


async def _prepend(first: str, rest: AsyncGenerator[str, None]) -> AsyncGenerator[str, None]:
    yield first
    async for piece in rest:
        yield piece


@router.post("/api/chat")
async def chat(
    request: ChatRequest,
    manager: ResourceLifecycleManager = Depends(get_manager),
) -> StreamingResponse:
    """Stream the answer as plain text.

    The first increment is produced before the response starts, so setup
    failures (no backend, missing transcript) surface as proper HTTP errors
    instead of a truncated stream.
    """
    stream = manager.chat(request.query, request.recording_id, request.session_id)
    try:
        first = await anext(stream)
    except StopAsyncIteration:
        return StreamingResponse(iter(()), media_type="text/plain")
    return StreamingResponse(_prepend(first, stream), media_type="text/plain")
