from __future__ import annotations

from collections import Counter

from fastapi import APIRouter, Request

from streamhub.config.defaults import APP_VERSION
from streamhub.engine.health import HealthState

from .responses import envelope

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def get_health(request: Request) -> dict[str, object]:
    state = request.app.state.streamhub
    settings = state.settings_store.settings
    engine = state.engine
    counts = Counter(record.state.value for record in engine.monitor.snapshot().values())
    return envelope(
        {
            "ok": not engine.stopped,
            "version": APP_VERSION,
            "bind": settings.bind,
            "port": settings.port,
            "sources": len(engine.registry.ids()),
            "active_workers": len(engine.supervisor.active_ids()),
            "states": {state_.value: counts.get(state_.value, 0) for state_ in HealthState},
            "registry_feed": state.feed_status(),
        }
    )
