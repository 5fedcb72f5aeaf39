from __future__ import annotations


class StreamError(Exception):
    """Base class for failures surfaced by the stream engine."""

    status = "error"
    retryable = False

    def __init__(self, source_id: str, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.source_id = source_id
        self.message = message
        self.retry_after = retry_after


class SourceUnknown(StreamError):
    status = "unknown_source"

    def __init__(self, source_id: str) -> None:
        super().__init__(source_id, f"unknown source: {source_id}")


class SourceUnavailable(StreamError):
    status = "unavailable"
    retryable = True


class ResolveTimeout(StreamError):
    status = "timeout"
    retryable = True


class ProcessFault(StreamError):
    status = "process_fault"
    retryable = True

    def __init__(self, source_id: str, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(source_id, message)
        self.exit_code = exit_code


class StoreFault(StreamError):
    status = "store_fault"
