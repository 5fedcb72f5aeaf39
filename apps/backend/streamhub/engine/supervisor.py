from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from streamhub.config.schema import StreamSettings
from streamhub.registry.sources import Source, SourceRegistry
from streamhub.util.logging import get_logger
from streamhub.util.security import SecretStore

from .errors import ProcessFault, SourceUnavailable, SourceUnknown, StoreFault
from .process import FFmpegLauncher, ProcessLauncher, TranscodeProcess, terminate_process
from .restart import RestartBudget
from .segments import SegmentStore

logger = get_logger(__name__)

WATCH_INTERVAL_SECONDS = 0.2


class WorkerState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class WorkerEvents(Protocol):
    def on_activation(self, source_id: str) -> None: ...

    def on_worker_exit(self, source_id: str, reason: str, will_restart: bool) -> None: ...

    def on_worker_stopped(self, source_id: str, reason: str, offline: bool = False) -> None: ...


class _NoEvents:
    def on_activation(self, source_id: str) -> None:
        return None

    def on_worker_exit(self, source_id: str, reason: str, will_restart: bool) -> None:
        return None

    def on_worker_stopped(self, source_id: str, reason: str, offline: bool = False) -> None:
        return None


@dataclass(frozen=True)
class WorkerHandle:
    source_id: str
    state: WorkerState
    started_at: float
    restart_count: int

    def as_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "started_at": self.started_at,
            "restart_count": self.restart_count,
        }


@dataclass(frozen=True)
class WorkerObservation:
    present: bool = False
    alive: bool = False
    state: WorkerState | None = None
    started_at: float | None = None
    restart_count: int = 0
    last_output_at: float | None = None


@dataclass
class Worker:
    source_id: str
    input_url: str = field(repr=False)
    area: Path
    started_at: float
    state: WorkerState = WorkerState.STARTING
    restart_count: int = 0
    last_output_at: float | None = None
    process_started_at: float = 0.0
    process: TranscodeProcess | None = field(default=None, repr=False)
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    thread: threading.Thread | None = field(default=None, repr=False)

    def handle(self) -> WorkerHandle:
        return WorkerHandle(
            source_id=self.source_id,
            state=self.state,
            started_at=self.started_at,
            restart_count=self.restart_count,
        )

    def alive(self) -> bool:
        process = self.process
        return process is not None and process.poll() is None


class TranscodeSupervisor:
    """Owns one transcoding process per active source and restarts it within a budget."""

    def __init__(
        self,
        registry: SourceRegistry,
        store: SegmentStore,
        settings: StreamSettings,
        secret_store: SecretStore | None = None,
        launcher: ProcessLauncher | None = None,
        events: WorkerEvents | None = None,
        clock: Callable[[], float] = time.time,
        budget_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.store = store
        self.settings = settings
        self.secret_store = secret_store
        self.launcher: ProcessLauncher = launcher or FFmpegLauncher(settings)
        self.events: WorkerEvents = events or _NoEvents()
        self.clock = clock
        self.budget_clock = budget_clock
        self._workers: dict[str, Worker] = {}
        self._budgets: dict[str, RestartBudget] = {}
        self._source_locks: dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()

    def bind_events(self, events: WorkerEvents) -> None:
        self.events = events

    def _source_lock(self, source_id: str) -> threading.Lock:
        with self._table_lock:
            lock = self._source_locks.get(source_id)
            if lock is None:
                lock = threading.Lock()
                self._source_locks[source_id] = lock
            return lock

    def _budget_for(self, source_id: str) -> RestartBudget:
        with self._table_lock:
            budget = self._budgets.get(source_id)
            if budget is None:
                budget = RestartBudget(
                    max_attempts=self.settings.restart_max_attempts,
                    window_seconds=self.settings.restart_window_seconds,
                    cooldown_seconds=self.settings.restart_cooldown_seconds,
                    min_backoff_seconds=self.settings.backoff_min_seconds,
                    max_backoff_seconds=self.settings.backoff_max_seconds,
                    clock=self.budget_clock,
                )
                self._budgets[source_id] = budget
            return budget

    def cooldown_remaining(self, source_id: str) -> float:
        with self._table_lock:
            budget = self._budgets.get(source_id)
        return budget.cooldown_remaining() if budget is not None else 0.0

    def handle(self, source_id: str) -> WorkerHandle | None:
        with self._table_lock:
            worker = self._workers.get(source_id)
        return worker.handle() if worker is not None else None

    def active_ids(self) -> list[str]:
        with self._table_lock:
            return sorted(self._workers)

    def observe(self, source_id: str) -> WorkerObservation:
        with self._table_lock:
            worker = self._workers.get(source_id)
        if worker is None:
            return WorkerObservation()
        return WorkerObservation(
            present=True,
            alive=worker.alive(),
            state=worker.state,
            started_at=worker.started_at,
            restart_count=worker.restart_count,
            last_output_at=worker.last_output_at,
        )

    def ensure_worker(self, source_id: str) -> WorkerHandle:
        source = self.registry.get(source_id)
        if source is None:
            raise SourceUnknown(source_id)

        with self._source_lock(source_id):
            # A removal may have run between the lookup above and taking the lock.
            source = self.registry.get(source_id)
            if source is None:
                raise SourceUnknown(source_id)
            with self._table_lock:
                existing = self._workers.get(source_id)
            if existing is not None:
                return existing.handle()

            budget = self._budget_for(source_id)
            if not budget.try_rearm():
                remaining = budget.cooldown_remaining()
                raise SourceUnavailable(
                    source_id,
                    f"restart budget exhausted, cooling down for {remaining:.1f}s",
                    retry_after=remaining,
                )

            try:
                area = self.store.prepare(source_id)
            except StoreFault as exc:
                logger.error("stream area unavailable for %s: %s", source_id, exc.message)
                raise SourceUnavailable(source_id, "stream storage unavailable") from exc

            worker = Worker(
                source_id=source_id,
                input_url=self._input_url(source),
                area=area,
                started_at=self.clock(),
            )
            self.events.on_activation(source_id)
            try:
                self._launch(worker)
            except OSError as exc:
                budget.register_failure()
                reason = f"transcoder failed to start: {exc}"
                logger.error("%s (%s)", reason, source_id)
                self.events.on_worker_exit(source_id, reason, False)
                self._purge_quietly(source_id)
                raise SourceUnavailable(source_id, reason, retry_after=budget.cooldown_remaining() or None) from exc

            worker.thread = threading.Thread(
                target=self._supervise,
                args=(worker,),
                name=f"transcode-{source_id}",
                daemon=True,
            )
            with self._table_lock:
                self._workers[source_id] = worker
            worker.thread.start()
            logger.info("transcode worker started: %s", source_id)
            return worker.handle()

    def stop_worker(self, source_id: str, reason: str = "stopped", offline: bool = False) -> bool:
        with self._source_lock(source_id):
            with self._table_lock:
                worker = self._workers.pop(source_id, None)
            if worker is None:
                self._purge_quietly(source_id)
                return False

            worker.stop_event.set()
            try:
                process = worker.process
                if process is not None:
                    terminate_process(process, self.settings.stop_grace_seconds)
                thread = worker.thread
                if thread is not None and thread is not threading.current_thread():
                    thread.join(timeout=self.settings.stop_grace_seconds + 2.0)
                    if thread.is_alive():
                        logger.warning("transcode supervisor thread did not stop in time: %s", source_id)
            finally:
                worker.state = WorkerState.STOPPED
                self._purge_quietly(source_id)
            logger.info("transcode worker stopped: %s (%s)", source_id, reason)
        self.events.on_worker_stopped(source_id, reason, offline)
        return True

    def stop_all(self, reason: str = "shutdown") -> None:
        for source_id in self.active_ids():
            self.stop_worker(source_id, reason=reason)

    def on_registry_change(
        self,
        added: Iterable[Source],
        removed: Iterable[str],
        changed: Iterable[Source] = (),
    ) -> None:
        for source_id in removed:
            self.stop_worker(source_id, reason="source removed", offline=True)
            with self._table_lock:
                self._budgets.pop(source_id, None)
                self._source_locks.pop(source_id, None)
        for source in changed:
            if self.stop_worker(source.id, reason="source configuration changed"):
                logger.info("worker for %s will restart with new configuration on next request", source.id)
        for source in added:
            logger.debug("source registered: %s (%s)", source.id, source.safe_url)

    def _input_url(self, source: Source) -> str:
        password = None
        if source.secret_ref and self.secret_store is not None:
            password = self.secret_store.get(source.secret)
            if password is None:
                logger.warning("credentials for %s could not be resolved", source.id)
        return source.rtsp_url(password)

    def _launch(self, worker: Worker) -> TranscodeProcess:
        process = self.launcher(worker.source_id, worker.input_url, worker.area)
        worker.process = process
        worker.process_started_at = self.clock()
        worker.state = WorkerState.RUNNING
        return process

    def _purge_quietly(self, source_id: str) -> None:
        try:
            self.store.purge(source_id)
        except StoreFault as exc:
            logger.error("failed to purge stream area for %s: %s", source_id, exc.message)

    def _supervise(self, worker: Worker) -> None:
        source_id = worker.source_id
        budget = self._budget_for(source_id)
        process = worker.process
        try:
            while not worker.stop_event.is_set():
                if process is None:
                    try:
                        process = self._launch(worker)
                        worker.restart_count += 1
                        logger.info("transcode worker respawned: %s (restart %d)", source_id, worker.restart_count)
                    except OSError as exc:
                        fault = ProcessFault(source_id, f"transcoder failed to start: {exc}")
                    else:
                        fault = self._watch(worker, process)
                else:
                    fault = self._watch(worker, process)

                if process is not None:
                    terminate_process(process, self.settings.stop_grace_seconds)
                    process = None
                    worker.process = None
                if fault is None or worker.stop_event.is_set():
                    break

                delay = budget.register_failure()
                will_restart = delay is not None
                logger.warning(
                    "transcode worker fault for %s: %s (failures=%d, restart=%s)",
                    source_id,
                    fault.message,
                    budget.failures,
                    will_restart,
                )
                self.events.on_worker_exit(source_id, fault.message, will_restart)
                if delay is None:
                    self._retire(worker, fault.message)
                    return
                worker.state = WorkerState.BACKOFF
                if worker.stop_event.wait(delay):
                    break
        except Exception:
            logger.exception("transcode supervisor crashed: %s", source_id)
            self.events.on_worker_exit(source_id, "supervisor crashed", False)
            self._retire(worker, "supervisor crashed")
        finally:
            if process is not None:
                terminate_process(process, self.settings.stop_grace_seconds)
            worker.process = None
            worker.state = WorkerState.STOPPED

    def _watch(self, worker: Worker, process: TranscodeProcess) -> ProcessFault | None:
        source_id = worker.source_id
        while True:
            if worker.stop_event.wait(WATCH_INTERVAL_SECONDS):
                return None
            exit_code = process.poll()
            if exit_code is not None:
                tail = process.stderr_tail().splitlines()
                detail = f": {tail[-1]}" if tail else ""
                return ProcessFault(source_id, f"transcoder exited with code {exit_code}{detail}", exit_code=exit_code)

            last_output = self.store.last_output_at(source_id)
            if last_output is not None and (worker.last_output_at is None or last_output > worker.last_output_at):
                worker.last_output_at = last_output
            reference = max(worker.last_output_at or 0.0, worker.process_started_at)
            silent_for = self.clock() - reference
            if silent_for > self.settings.hang_timeout_seconds:
                logger.warning("transcoder for %s produced no output for %.1fs, terminating", source_id, silent_for)
                return ProcessFault(source_id, f"transcoder hung: no output for {silent_for:.0f}s")

    def _retire(self, worker: Worker, reason: str) -> None:
        lock = self._source_lock(worker.source_id)
        while not lock.acquire(timeout=0.1):
            if worker.stop_event.is_set():
                return
        try:
            with self._table_lock:
                if self._workers.get(worker.source_id) is not worker:
                    return
                self._workers.pop(worker.source_id)
            self._purge_quietly(worker.source_id)
        finally:
            lock.release()
        logger.error("transcode worker for %s gave up: %s", worker.source_id, reason)
