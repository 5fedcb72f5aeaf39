from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import FileResponse

from streamhub.config.defaults import MANIFEST_NAME
from streamhub.engine.segments import SEGMENT_SUFFIXES
from streamhub.util.security import resolve_path_within_base, validate_source_id

from .responses import envelope

router = APIRouter(tags=["streams"])
media_router = APIRouter(tags=["media"])

MEDIA_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".aac": "audio/aac",
}
NO_CACHE_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate", "Pragma": "no-cache", "Expires": "0"}


def _source_id_or_400(source_id: str) -> str:
    try:
        return validate_source_id(source_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


async def _resolve(source_id: str, timeout: float | None, request: Request) -> dict[str, object]:
    state = request.app.state.streamhub
    source_id = _source_id_or_400(source_id)
    # Waits on the event loop; status and media routes keep the threadpool to themselves.
    ref = await state.engine.resolve_async(source_id, timeout)
    base_url = state.settings_store.settings.stream.public_base_url or str(request.base_url)
    return envelope(
        {
            "stream_url": ref.url(base_url),
            "source_id": ref.source_id,
            "media_sequence": ref.media_sequence,
        },
        message="Stream ready",
    )


@router.get("/cctvs/stream/{source_id}")
async def get_cctv_stream(
    source_id: str,
    request: Request,
    timeout: float | None = Query(default=None, ge=0),
) -> dict[str, object]:
    return await _resolve(source_id, timeout, request)


@router.get("/streams/status")
def list_stream_status(request: Request) -> dict[str, object]:
    state = request.app.state.streamhub
    return envelope(state.engine.statuses())


@router.get("/streams/{source_id}/status")
def get_stream_status(source_id: str, request: Request) -> dict[str, object]:
    state = request.app.state.streamhub
    source_id = _source_id_or_400(source_id)
    status = state.engine.status(source_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"unknown source: {source_id}")
    return envelope(status)


@router.get("/streams/{source_id}")
async def get_stream(
    source_id: str,
    request: Request,
    timeout: float | None = Query(default=None, ge=0),
) -> dict[str, object]:
    return await _resolve(source_id, timeout, request)


@media_router.get("/streams/{source_id}/{file_name}")
def get_stream_file(source_id: str, file_name: str, request: Request) -> FileResponse:
    state = request.app.state.streamhub
    source_id = _source_id_or_400(source_id)
    suffix = Path(file_name).suffix
    if suffix not in MEDIA_TYPES or (suffix == ".m3u8" and file_name != MANIFEST_NAME):
        raise HTTPException(status_code=400, detail="Invalid path")
    if suffix != ".m3u8" and suffix not in SEGMENT_SUFFIXES:
        raise HTTPException(status_code=400, detail="Invalid path")

    target = resolve_path_within_base(state.engine.store.area_for(source_id), file_name)
    if target is None:
        raise HTTPException(status_code=400, detail="Invalid path")
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Media not found")

    if file_name == MANIFEST_NAME:
        state.engine.touch(source_id)
        return FileResponse(target, media_type=MEDIA_TYPES[suffix], headers=NO_CACHE_HEADERS)
    return FileResponse(target, media_type=MEDIA_TYPES[suffix])
