from __future__ import annotations

import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from streamhub.util.logging import get_logger
from streamhub.util.time import wall_from_epoch

logger = get_logger(__name__)

# Output older than the activation instant by more than this is not "fresh".
FRESHNESS_SLACK_SECONDS = 1.0


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    ONLINE = "online"
    STALLED = "stalled"
    OFFLINE = "offline"


@dataclass(frozen=True)
class HealthRecord:
    source_id: str
    state: HealthState = HealthState.UNKNOWN
    changed_at: float = 0.0
    last_error: str | None = None
    activated_at: float | None = None
    reachable: bool | None = None
    probed_at: float | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "source_id": self.source_id,
            "state": self.state.value,
            "changed_at": wall_from_epoch(self.changed_at) if self.changed_at else None,
            "last_error": self.last_error,
            "reachable": self.reachable,
        }


@dataclass(frozen=True)
class HealthPolicy:
    startup_grace_seconds: float = 20.0
    freshness_window_seconds: float = 10.0


@dataclass(frozen=True)
class WorkerSignal:
    present: bool = False
    alive: bool = False
    ready: bool = False
    last_output_at: float | None = None


def _move(record: HealthRecord, state: HealthState, now: float, error: str | None = None) -> HealthRecord:
    if record.state == state and error is None:
        return record
    return replace(
        record,
        state=state,
        changed_at=now if record.state != state else record.changed_at,
        last_error=error if error is not None else (None if state == HealthState.ONLINE else record.last_error),
    )


def on_activation(record: HealthRecord, now: float) -> HealthRecord:
    if record.state in (HealthState.UNKNOWN, HealthState.OFFLINE):
        return replace(record, state=HealthState.STARTING, changed_at=now, activated_at=now, last_error=None)
    return record


def on_observation(record: HealthRecord, signal: WorkerSignal, now: float, policy: HealthPolicy) -> HealthRecord:
    state = record.state
    if state == HealthState.STARTING:
        activated_at = record.activated_at if record.activated_at is not None else record.changed_at
        fresh = signal.last_output_at is not None and signal.last_output_at >= activated_at - FRESHNESS_SLACK_SECONDS
        if signal.ready and fresh:
            return _move(record, HealthState.ONLINE, now)
        if now - activated_at > policy.startup_grace_seconds:
            return _move(record, HealthState.OFFLINE, now, "no manifest within startup grace period")
        return record

    if state == HealthState.ONLINE:
        if not signal.present:
            return _move(record, HealthState.OFFLINE, now, record.last_error or "worker gone")
        stale = signal.last_output_at is None or now - signal.last_output_at > policy.freshness_window_seconds
        if signal.alive and stale:
            return _move(
                record,
                HealthState.STALLED,
                now,
                f"no new segment for {policy.freshness_window_seconds:g}s",
            )
        return record

    if state == HealthState.STALLED:
        if not signal.present:
            return _move(record, HealthState.OFFLINE, now, record.last_error or "worker gone")
        if signal.last_output_at is not None and now - signal.last_output_at <= policy.freshness_window_seconds:
            return _move(record, HealthState.ONLINE, now)
        return record

    return record


def on_worker_exit(record: HealthRecord, now: float, reason: str, will_restart: bool) -> HealthRecord:
    if not will_restart and record.state in (HealthState.STARTING, HealthState.ONLINE, HealthState.STALLED):
        return _move(record, HealthState.OFFLINE, now, reason)
    return replace(record, last_error=reason)


def on_worker_stopped(record: HealthRecord, now: float, reason: str, offline: bool) -> HealthRecord:
    if offline:
        if record.state == HealthState.OFFLINE:
            return record
        return _move(record, HealthState.OFFLINE, now, reason)
    if record.state == HealthState.UNKNOWN:
        return record
    return replace(record, state=HealthState.UNKNOWN, changed_at=now, activated_at=None, last_error=None)


def on_probe(record: HealthRecord, now: float, reachable: bool) -> HealthRecord:
    return replace(record, reachable=reachable, probed_at=now)


def tcp_reachable(host: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


SignalReader = Callable[[str], WorkerSignal]
TransitionListener = Callable[[HealthRecord, HealthRecord], None]
ProbeTarget = Callable[[str], tuple[str, int] | None]


class HealthMonitor:
    """Owns every HealthRecord; other components only read them by source id."""

    def __init__(
        self,
        policy: HealthPolicy,
        read_signal: SignalReader,
        poll_seconds: float = 1.0,
        probe_target: ProbeTarget | None = None,
        probe_interval_seconds: float = 0.0,
        probe_timeout_seconds: float = 1.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy = policy
        self.read_signal = read_signal
        self.poll_seconds = poll_seconds
        self.probe_target = probe_target
        self.probe_interval_seconds = probe_interval_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self.clock = clock
        self._records: dict[str, HealthRecord] = {}
        self._lock = threading.Lock()
        self._listeners: list[TransitionListener] = []
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def subscribe(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def get(self, source_id: str) -> HealthRecord | None:
        with self._lock:
            return self._records.get(source_id)

    def snapshot(self) -> dict[str, HealthRecord]:
        with self._lock:
            return dict(self._records)

    def track(self, source_id: str) -> None:
        with self._lock:
            if source_id in self._records:
                return
            self._records[source_id] = HealthRecord(source_id=source_id, changed_at=self.clock())
        logger.debug("health record created: %s", source_id)

    def forget(self, source_id: str) -> None:
        now = self.clock()
        with self._lock:
            before = self._records.pop(source_id, None)
        if before is not None and before.state != HealthState.OFFLINE:
            self._emit(before, _move(before, HealthState.OFFLINE, now, "source removed"))

    def on_activation(self, source_id: str) -> None:
        self._apply(source_id, lambda r, now: on_activation(r, now))

    def on_worker_exit(self, source_id: str, reason: str, will_restart: bool) -> None:
        self._apply(source_id, lambda r, now: on_worker_exit(r, now, reason, will_restart))

    def on_worker_stopped(self, source_id: str, reason: str, offline: bool = False) -> None:
        self._apply(source_id, lambda r, now: on_worker_stopped(r, now, reason, offline))

    def refresh(self, source_id: str) -> HealthRecord | None:
        """Observe one source immediately instead of waiting for the next poll."""
        try:
            signal = self.read_signal(source_id)
        except Exception:
            logger.exception("health signal read failed: %s", source_id)
            return self.get(source_id)
        self._apply(source_id, lambda r, now, s=signal: on_observation(r, s, now, self.policy))
        return self.get(source_id)

    def poll_once(self) -> None:
        with self._lock:
            source_ids = list(self._records)
        for source_id in source_ids:
            self.refresh(source_id)

    def probe_once(self) -> None:
        if self.probe_target is None or self.probe_interval_seconds <= 0:
            return
        now = self.clock()
        with self._lock:
            due = [
                r.source_id
                for r in self._records.values()
                if r.probed_at is None or now - r.probed_at >= self.probe_interval_seconds
            ]
        for source_id in due:
            if self._stop_event.is_set():
                return
            if self.read_signal(source_id).present:
                continue
            target = self.probe_target(source_id)
            if target is None:
                continue
            reachable = tcp_reachable(target[0], target[1], self.probe_timeout_seconds)
            self._apply(source_id, lambda r, at, ok=reachable: on_probe(r, at, ok))

    def _apply(self, source_id: str, transition: Callable[[HealthRecord, float], HealthRecord]) -> None:
        with self._lock:
            before = self._records.get(source_id)
            if before is None:
                return
            after = transition(before, self.clock())
            self._records[source_id] = after
        if after.state != before.state:
            self._emit(before, after)

    def _emit(self, before: HealthRecord, after: HealthRecord) -> None:
        if after.state == HealthState.OFFLINE and after.last_error:
            logger.warning("health %s: %s -> %s (%s)", after.source_id, before.state.value, after.state.value, after.last_error)
        else:
            logger.info("health %s: %s -> %s", after.source_id, before.state.value, after.state.value)
        for listener in list(self._listeners):
            try:
                listener(before, after)
            except Exception:
                logger.exception("health listener failed")

    def start(self) -> None:
        if self._threads:
            return
        self._stop_event.clear()
        poller = threading.Thread(target=self._poll_loop, name="health-monitor", daemon=True)
        self._threads.append(poller)
        if self.probe_target is not None and self.probe_interval_seconds > 0:
            prober = threading.Thread(target=self._probe_loop, name="health-probe", daemon=True)
            self._threads.append(prober)
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float = 3.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("health poll failed")
            if self._stop_event.wait(self.poll_seconds):
                break

    def _probe_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.probe_once()
            except Exception:
                logger.exception("reachability probe failed")
            if self._stop_event.wait(min(self.probe_interval_seconds, 5.0)):
                break
