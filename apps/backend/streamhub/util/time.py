from __future__ import annotations

import datetime as dt
import time


def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def monotonic() -> float:
    return time.monotonic()


def wall_from_monotonic(value: float | None) -> str | None:
    """Convert a monotonic timestamp into an ISO wall-clock string for status payloads."""
    if value is None:
        return None
    offset = time.monotonic() - value
    return (now_utc() - dt.timedelta(seconds=offset)).isoformat()


def wall_from_epoch(value: float | None) -> str | None:
    if value is None:
        return None
    return dt.datetime.fromtimestamp(value, tz=dt.timezone.utc).isoformat()
