"""Index endpoints: add or remove recordings, rebuild, and semantic search."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from engram.api.dependencies import get_manager
from engram.api.models import IndexResponse, RebuildResponse, SearchHit, SearchRequest
from engram.service.lifecycle import ResourceLifecycleManager

router = APIRouter()


@router.post("/api/recordings/{recording_id}/index", response_model=IndexResponse)
async def index_recording(
    recording_id: int,
    manager: ResourceLifecycleManager = Depends(get_manager),
) -> IndexResponse:
    """Index a recording's transcript. Already-indexed recordings are left as is."""
    await manager.index_recording(recording_id)
    return IndexResponse(recording_id=recording_id, indexed=manager.is_recording_indexed(recording_id))


@router.delete("/api/recordings/{recording_id}/index", response_model=IndexResponse)
async def remove_recording(
    recording_id: int,
    manager: ResourceLifecycleManager = Depends(get_manager),
) -> IndexResponse:
    await manager.remove_recording(recording_id)
    return IndexResponse(recording_id=recording_id, indexed=False)


@router.post("/api/index/rebuild", response_model=RebuildResponse)
async def rebuild_index(manager: ResourceLifecycleManager = Depends(get_manager)) -> RebuildResponse:
    count = await manager.rebuild_index()
    return RebuildResponse(indexed_recordings=count)


@router.post("/api/search", response_model=list[SearchHit])
async def search(
    request: SearchRequest,
    manager: ResourceLifecycleManager = Depends(get_manager),
) -> list[SearchHit]:
    """Semantic search over indexed transcript segments."""
    results = await manager.search(request.query, limit=request.limit, recording_id=request.recording_id)
    return [
        SearchHit(
            recording_id=r.recording.id,
            recording_title=r.recording.title,
            segment_id=r.segment.id,
            speaker=r.segment.speaker,
            start_time=r.segment.start_time,
            end_time=r.segment.end_time,
            text=r.segment.text,
            score=r.score,
        )
        for r in results
    ]
