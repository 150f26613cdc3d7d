"""Rate limited, FIFO dispatch of outbound calls.

Each job kind (read / write) owns a dispatcher thread that admits jobs in
submission order through two gates:

* a concurrency gate (``max_concurrent`` jobs in flight), and
* a sliding-window rate gate (``max_requests`` dispatches per ``per_seconds``).

Admitted jobs run on a per-kind thread pool and settle the
:class:`~concurrent.futures.Future` handed back by :meth:`RateLimitedQueue.enqueue`.
The queue never retries; a failing job only fails its own future.
"""

from __future__ import annotations

import queue
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from trakt_mediator.backend.common.errors import RateLimitConfigError, TaskError
from trakt_mediator.backend.common.logging import get_logger

log = get_logger(__name__)


class JobKind(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class RateBudget:
    max_concurrent: int
    max_requests: int
    per_seconds: float

    def validate(self) -> None:
        if self.max_concurrent < 1:
            raise RateLimitConfigError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.max_requests < 1:
            raise RateLimitConfigError(f"max_requests must be >= 1, got {self.max_requests}")
        if self.per_seconds <= 0:
            raise RateLimitConfigError(f"per_seconds must be > 0, got {self.per_seconds}")


@dataclass
class QueuedJob:
    kind: JobKind
    work: Callable[[], Any]
    future: Future


class SlidingWindowGate:
    """Blocking sliding-window limiter.

    Only the owning dispatcher thread calls :meth:`acquire`, so the window
    needs no lock.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._stamps: deque[float] = deque()

    def acquire(self) -> float:
        """Block until a dispatch is allowed; return the seconds spent waiting."""

        waited = 0.0
        while True:
            now = self._clock()
            cutoff = now - self._window_seconds
            while self._stamps and self._stamps[0] <= cutoff:
                self._stamps.popleft()

            if len(self._stamps) < self._max_requests:
                self._stamps.append(now)
                return waited

            delay = max(self._stamps[0] + self._window_seconds - now, 0.001)
            self._sleep(delay)
            waited += delay


class _KindDispatcher:
    def __init__(self, name: str, kind: JobKind, budget: RateBudget, gate: SlidingWindowGate) -> None:
        self.kind = kind
        self._pending: "queue.SimpleQueue[Optional[QueuedJob]]" = queue.SimpleQueue()
        self._slots = threading.BoundedSemaphore(budget.max_concurrent)
        self._gate = gate
        self._executor = ThreadPoolExecutor(
            max_workers=budget.max_concurrent,
            thread_name_prefix=f"{name}-{kind.value}",
        )
        self._thread = threading.Thread(
            target=self._run,
            name=f"{name}-{kind.value}-dispatch",
            daemon=True,
        )
        self._thread.start()

    def put(self, job: Optional[QueuedJob]) -> None:
        self._pending.put(job)

    def pending(self) -> int:
        return self._pending.qsize()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def shutdown(self, wait: bool) -> None:
        self._executor.shutdown(wait=wait)

    def _run(self) -> None:
        while True:
            job = self._pending.get()
            if job is None:
                self._executor.shutdown(wait=False)
                break
            if job.future.cancelled():
                continue

            self._slots.acquire()
            if not job.future.set_running_or_notify_cancel():
                self._slots.release()
                continue

            waited = self._gate.acquire()
            if waited:
                log.debug("%s job throttled for %.3fs", self.kind.value, waited)
            self._executor.submit(self._execute, job)

    def _execute(self, job: QueuedJob) -> None:
        try:
            result = job.work()
        except Exception as exc:  # noqa: BLE001 - settled on the waiter's future
            job.future.set_exception(exc)
        except BaseException as exc:
            job.future.set_exception(exc)
            raise
        else:
            job.future.set_result(result)
        finally:
            self._slots.release()


class RateLimitedQueue:
    """Bounded-rate, bounded-concurrency dispatcher with one lane per :class:`JobKind`."""

    def __init__(
        self,
        read_budget: RateBudget,
        write_budget: RateBudget,
        *,
        name: str = "mediator",
        gates: Optional[Mapping[JobKind, SlidingWindowGate]] = None,
    ) -> None:
        budgets = {JobKind.READ: read_budget, JobKind.WRITE: write_budget}
        for budget in budgets.values():
            budget.validate()

        gates = dict(gates or {})
        self._dispatchers: Dict[JobKind, _KindDispatcher] = {}
        for kind, budget in budgets.items():
            gate = gates.get(kind) or SlidingWindowGate(
                max_requests=budget.max_requests,
                window_seconds=budget.per_seconds,
            )
            self._dispatchers[kind] = _KindDispatcher(name, kind, budget, gate)

        self._closed = False
        self._lock = threading.Lock()

    def enqueue(self, kind: JobKind, work: Callable[[], Any]) -> Future:
        """Queue ``work`` behind earlier jobs of the same kind and return its future."""

        future: Future = Future()
        with self._lock:
            if self._closed:
                raise TaskError("RateLimitedQueue is closed")
            self._dispatchers[JobKind(kind)].put(QueuedJob(kind=JobKind(kind), work=work, future=future))

        return future

    def pending(self, kind: JobKind) -> int:
        return self._dispatchers[JobKind(kind)].pending()

    def close(self, wait: bool = True) -> None:
        """Stop accepting work. Jobs already queued are still dispatched."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            for dispatcher in self._dispatchers.values():
                dispatcher.put(None)

        if wait:
            for dispatcher in self._dispatchers.values():
                dispatcher.join()
                dispatcher.shutdown(wait=True)

    def __enter__(self) -> "RateLimitedQueue":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close(wait=True)


__all__ = [
    "JobKind",
    "QueuedJob",
    "RateBudget",
    "RateLimitedQueue",
    "SlidingWindowGate",
]
