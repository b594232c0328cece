from __future__ import annotations

import heapq
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Condition, Lock
from typing import Callable


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class RequeueError(Exception):
    """A prerequisite is not ready yet; retry the key after a short fixed delay."""


class WorkQueue:
    """Deduplicating key queue with delayed adds and per-key backoff.

    A key handed out by ``get`` is never handed to a second worker before
    ``done`` is called for it; adds in the meantime are held back and
    released by ``done``.
    """

    def __init__(self, base_delay_s: float = 0.5, max_delay_s: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self._clock = clock
        self._cond = Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._due: dict[str, float] = {}
        self._seq = 0
        self._failures: dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due = self._clock() + delay_s
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            self._seq += 1
            heapq.heappush(self._waiting, (due, self._seq, key))
            self._cond.notify()

    def backoff(self, failures: int) -> float:
        return min(self.base_delay_s * (2 ** failures), self.max_delay_s)

    def add_rate_limited(self, key: str) -> float:
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = self.backoff(failures)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds to the next one."""
        now = self._clock()
        while self._waiting:
            due, _, key = self._waiting[0]
            if self._due.get(key) != due:
                heapq.heappop(self._waiting)
                continue
            if due > now:
                return due - now
            heapq.heappop(self._waiting)
            del self._due[key]
            self._add_locked(key)
        return None

    def get(self, timeout_s: float | None = None) -> str | None:
        """Block for the next key; None on shutdown or timeout."""
        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None
                wait = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


@dataclass
class SyncRecord:
    key: str
    result: str  # ok|requeue|error
    message: str
    requeues: int = 0
    at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory outcome of the last sync per cluster key."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.records: dict[str, SyncRecord] = {}

    def record(self, key: str, result: str, message: str = "", requeues: int = 0) -> SyncRecord:
        rec = SyncRecord(key=key, result=result, message=message, requeues=requeues)
        with self.lock:
            self.records[key] = rec
        return rec

    def get(self, key: str) -> SyncRecord | None:
        with self.lock:
            return self.records.get(key)

    def list_records(self) -> list[SyncRecord]:
        with self.lock:
            return sorted(self.records.values(), key=lambda r: r.key)
