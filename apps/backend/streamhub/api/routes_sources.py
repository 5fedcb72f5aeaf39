from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from streamhub.camera.probe import probe_rtsp
from streamhub.registry.sources import SourcePayload, source_from_payload
from streamhub.util.security import validate_rtsp_url, validate_source_id

from .responses import envelope

router = APIRouter(prefix="/sources", tags=["sources"])


class ProbePayload(BaseModel):
    source_id: str | None = None
    rtsp_url: str | None = None
    timeout_ms: int = Field(default=1500, ge=100, le=15000)


@router.get("")
def list_sources(request: Request) -> dict[str, object]:
    state = request.app.state.streamhub
    return envelope([source.public_view() for source in state.registry.list_sources()])


@router.put("")
def replace_sources(payload: list[SourcePayload], request: Request) -> dict[str, object]:
    state = request.app.state.streamhub
    if state.feed is not None:
        raise HTTPException(status_code=409, detail="Sources are managed by the registry feed")

    sources = []
    for item in payload:
        try:
            sources.append(source_from_payload(item, state.secret_store))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"source {item.id}: {exc}") from exc

    change = state.replace_sources(sources)
    return envelope(
        {
            "added": [source.id for source in change.added],
            "removed": list(change.removed),
            "changed": [source.id for source in change.changed],
        },
        message="Sources updated",
    )


@router.post("/probe")
def probe_source(payload: ProbePayload, request: Request) -> dict[str, object]:
    state = request.app.state.streamhub
    if payload.source_id:
        try:
            source_id = validate_source_id(payload.source_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        source = state.registry.get(source_id)
        if source is None:
            raise HTTPException(status_code=404, detail=f"unknown source: {source_id}")
        password = state.secret_store.get(source.secret) if source.secret_ref else None
        url = source.rtsp_url(password)
    elif payload.rtsp_url:
        try:
            url = validate_rtsp_url(payload.rtsp_url)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    else:
        raise HTTPException(status_code=400, detail="source_id or rtsp_url is required")

    result = probe_rtsp(url, timeout_ms=payload.timeout_ms)
    return envelope(result.as_dict(), message=result.message)
