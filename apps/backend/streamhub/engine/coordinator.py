from __future__ import annotations

import asyncio
import concurrent.futures
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from streamhub.config.defaults import MANIFEST_NAME
from streamhub.config.schema import StreamSettings
from streamhub.registry.sources import SourceRegistry
from streamhub.util.logging import get_logger

from .errors import ResolveTimeout, SourceUnavailable, SourceUnknown, StreamError
from .health import HealthMonitor, HealthState
from .segments import SegmentStore
from .supervisor import TranscodeSupervisor

logger = get_logger(__name__)

READINESS_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class ManifestRef:
    source_id: str
    path: str
    media_sequence: int

    def url(self, base_url: str = "") -> str:
        return f"{base_url.rstrip('/')}{self.path}"


def manifest_path(source_id: str) -> str:
    return f"/streams/{source_id}/{MANIFEST_NAME}"


class ActivationCoordinator:
    """Turns playback requests into at most one activation per source.

    Concurrent callers for the same source share one Future; each caller waits on it
    with its own deadline, so an abandoned wait never cancels the activation itself.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        supervisor: TranscodeSupervisor,
        store: SegmentStore,
        monitor: HealthMonitor,
        settings: StreamSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.supervisor = supervisor
        self.store = store
        self.monitor = monitor
        self.settings = settings
        self.clock = clock
        self._activations: dict[str, concurrent.futures.Future[ManifestRef]] = {}
        self._last_activity: dict[str, float] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()
        self._stop_event = threading.Event()

    def _lock_for(self, source_id: str) -> threading.Lock:
        with self._table_lock:
            lock = self._locks.get(source_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[source_id] = lock
            return lock

    def clamp_timeout(self, timeout: float | None) -> float:
        if timeout is None:
            timeout = self.settings.default_resolve_timeout_seconds
        return max(0.0, min(float(timeout), self.settings.max_resolve_timeout_seconds))

    def in_flight(self, source_id: str) -> bool:
        with self._table_lock:
            return source_id in self._activations

    def last_activity(self, source_id: str) -> float | None:
        with self._table_lock:
            return self._last_activity.get(source_id)

    def submit(self, source_id: str) -> concurrent.futures.Future[ManifestRef]:
        """Start or join the activation for ``source_id`` without waiting on it.

        The returned future is already running, so a waiter that gives up cannot cancel
        the activation other callers share.
        """
        if self._stop_event.is_set():
            raise SourceUnavailable(source_id, "stream engine is shutting down")
        if source_id not in self.registry:
            raise SourceUnknown(source_id)

        with self._lock_for(source_id):
            self._mark_activity(source_id)
            ready = self._ready_ref(source_id)
            if ready is not None:
                done: concurrent.futures.Future[ManifestRef] = concurrent.futures.Future()
                done.set_result(ready)
                return done
            with self._table_lock:
                future = self._activations.get(source_id)
                started = future is None
                if future is None:
                    future = concurrent.futures.Future()
                    future.set_running_or_notify_cancel()
                    self._activations[source_id] = future
            if started:
                thread = threading.Thread(
                    target=self._activate,
                    args=(source_id, future),
                    name=f"activate-{source_id}",
                    daemon=True,
                )
                thread.start()
        return future

    def resolve(self, source_id: str, timeout: float | None = None) -> ManifestRef:
        wait_seconds = self.clamp_timeout(timeout)
        deadline = self.clock() + wait_seconds
        future = self.submit(source_id)
        try:
            return future.result(timeout=max(0.0, deadline - self.clock()))
        except concurrent.futures.TimeoutError:
            raise self._timed_out(source_id, wait_seconds) from None

    async def resolve_async(self, source_id: str, timeout: float | None = None) -> ManifestRef:
        """Like :meth:`resolve`, but waits on the event loop instead of holding a thread."""
        wait_seconds = self.clamp_timeout(timeout)
        deadline = self.clock() + wait_seconds
        # submit may briefly contend with an idle eviction on the same source lock.
        future = await asyncio.to_thread(self.submit, source_id)
        if future.done():
            return future.result()
        try:
            return await asyncio.wait_for(asyncio.wrap_future(future), max(0.0, deadline - self.clock()))
        except asyncio.TimeoutError:
            raise self._timed_out(source_id, wait_seconds) from None

    def _timed_out(self, source_id: str, wait_seconds: float) -> ResolveTimeout:
        return ResolveTimeout(source_id, f"stream not ready within {wait_seconds:g}s", retry_after=1.0)

    def touch(self, source_id: str) -> None:
        with self._lock_for(source_id):
            self._mark_activity(source_id)

    def forget(self, source_id: str) -> None:
        with self._table_lock:
            self._last_activity.pop(source_id, None)
            self._locks.pop(source_id, None)

    def sweep_idle(self) -> list[str]:
        evicted: list[str] = []
        for source_id in self.supervisor.active_ids():
            with self._lock_for(source_id):
                now = self.clock()
                with self._table_lock:
                    if source_id in self._activations:
                        continue
                    last = self._last_activity.get(source_id)
                    if last is None:
                        self._last_activity[source_id] = now
                        continue
                    if now - last < self.settings.idle_timeout_seconds:
                        continue
                    self._last_activity.pop(source_id, None)
                logger.info("evicting idle worker %s after %.0fs without playback", source_id, now - last)
                self.supervisor.stop_worker(source_id, reason="idle")
                evicted.append(source_id)
        return evicted

    def stop(self) -> None:
        self._stop_event.set()

    def _mark_activity(self, source_id: str) -> None:
        if source_id not in self.registry:
            return
        with self._table_lock:
            self._last_activity[source_id] = self.clock()

    def _ready_ref(self, source_id: str) -> ManifestRef | None:
        if self.supervisor.handle(source_id) is None:
            return None
        record = self.monitor.get(source_id)
        if record is None or record.state not in (HealthState.ONLINE, HealthState.STALLED):
            return None
        info = self.store.read_manifest(source_id)
        if info is None or not self.store.is_ready(source_id):
            return None
        return ManifestRef(source_id=source_id, path=manifest_path(source_id), media_sequence=info.media_sequence)

    def _activate(self, source_id: str, future: concurrent.futures.Future[ManifestRef]) -> None:
        outcome: ManifestRef | None = None
        error: BaseException | None = None
        try:
            self.supervisor.ensure_worker(source_id)
            outcome = self._await_ready(source_id)
            self._mark_activity(source_id)
            logger.info("stream ready: %s (sequence %d)", source_id, outcome.media_sequence)
        except StreamError as exc:
            error = exc
            logger.info("activation failed for %s: %s", source_id, exc.message)
        except Exception as exc:
            logger.exception("activation crashed: %s", source_id)
            error = SourceUnavailable(source_id, "activation failed")
            error.__cause__ = exc
        finally:
            with self._table_lock:
                if self._activations.get(source_id) is future:
                    self._activations.pop(source_id)
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(outcome)

    def _await_ready(self, source_id: str) -> ManifestRef:
        # The monitor owns the grace period; the local cap only bounds a stuck monitor.
        hard_deadline = (
            self.clock() + self.settings.startup_grace_seconds + 2.0 * self.settings.health_poll_seconds + 1.0
        )
        while True:
            record = self.monitor.refresh(source_id)
            if record is None or source_id not in self.registry:
                self._abandon(source_id, "source removed")
                raise SourceUnknown(source_id)
            if record.state in (HealthState.ONLINE, HealthState.STALLED):
                ready = self._ready_ref(source_id)
                if ready is not None:
                    return ready
            elif record.state == HealthState.OFFLINE:
                self._abandon(source_id, "startup failed")
                raise SourceUnavailable(
                    source_id,
                    record.last_error or "stream failed to start",
                    retry_after=self.supervisor.cooldown_remaining(source_id) or None,
                )
            elif record.state == HealthState.UNKNOWN:
                raise SourceUnavailable(source_id, "worker stopped during activation")

            if self.clock() >= hard_deadline:
                self._abandon(source_id, "no manifest within startup grace period")
                raise SourceUnavailable(source_id, "no manifest within startup grace period")
            if self._stop_event.wait(READINESS_POLL_SECONDS):
                raise SourceUnavailable(source_id, "stream engine is shutting down")

    def _abandon(self, source_id: str, reason: str) -> None:
        if self.supervisor.handle(source_id) is not None:
            self.supervisor.stop_worker(source_id, reason=reason, offline=True)
