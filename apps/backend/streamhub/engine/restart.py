from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class RestartBudget:
    max_attempts: int = 5
    window_seconds: float = 60.0
    cooldown_seconds: float = 60.0
    min_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    clock: Callable[[], float] = time.monotonic
    _failures: deque[float] = field(default_factory=deque, init=False, repr=False)
    _exhausted_at: float | None = field(default=None, init=False)
    # Shared by the activation, supervision and request threads.
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    @property
    def failures(self) -> int:
        with self._lock:
            self._trim(self.clock())
            return len(self._failures)

    def _trim(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.window_seconds:
            self._failures.popleft()

    def register_failure(self) -> float | None:
        """Record a crash; returns the backoff before respawning, or None once the budget is spent."""
        with self._lock:
            now = self.clock()
            self._trim(now)
            self._failures.append(now)
            if len(self._failures) >= self.max_attempts:
                self._exhausted_at = now
                return None
            return self.backoff_for(len(self._failures))

    def backoff_for(self, failures: int) -> float:
        return min(self.max_backoff_seconds, self.min_backoff_seconds * (2 ** max(0, failures - 1)))

    def _cooldown_left(self) -> float:
        if self._exhausted_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self.clock() - self._exhausted_at))

    def cooldown_remaining(self) -> float:
        with self._lock:
            return self._cooldown_left()

    def try_rearm(self) -> bool:
        with self._lock:
            if self._exhausted_at is None:
                return True
            if self._cooldown_left() > 0.0:
                return False
            self._clear()
            return True

    def reset(self) -> None:
        with self._lock:
            self._clear()

    def _clear(self) -> None:
        self._failures.clear()
        self._exhausted_at = None
