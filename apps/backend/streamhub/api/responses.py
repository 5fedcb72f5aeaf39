from __future__ import annotations

import math
from typing import Any

from fastapi.responses import JSONResponse

from streamhub.engine.errors import ResolveTimeout, SourceUnavailable, SourceUnknown, StreamError

ERROR_STATUS_CODES: dict[type[StreamError], int] = {
    SourceUnknown: 404,
    SourceUnavailable: 503,
    ResolveTimeout: 504,
}


def envelope(data: Any = None, message: str = "OK", success: bool = True) -> dict[str, Any]:
    return {"success": success, "message": message, "data": data}


def error_response(status_code: int, message: str, status: str, retry_after: float | None = None) -> JSONResponse:
    headers: dict[str, str] = {}
    if retry_after is not None:
        headers["Retry-After"] = str(max(1, math.ceil(retry_after)))
    return JSONResponse(
        status_code=status_code,
        content=envelope({"status": status, "retry_after": retry_after}, message=message, success=False),
        headers=headers,
    )


def stream_error_response(exc: StreamError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 503)
    retry_after = exc.retry_after
    if retry_after is None and exc.retryable:
        retry_after = 1.0
    if isinstance(exc, SourceUnknown):
        retry_after = None
    return error_response(status_code, exc.message, exc.status, retry_after)
