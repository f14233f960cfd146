from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Any

from gateway_deployer.src.metrics import METRICS


class WorkQueue:
    """Deduplicating work queue driving a reconcile callback from worker threads.

    Guarantees:

    * a key waiting in the queue is stored once, so a burst of events for
      the same Gateway collapses into a single reconciliation;
    * a key is never handed to two workers at once.  Adding a key that is
      currently being reconciled marks it dirty and it is queued again when
      the running pass finishes;
    * a failing pass is retried after ``min(max_delay, base_delay * 2 ** (n - 1))``
      seconds; after ``max_attempts`` failures the key is dropped and only
      the error log and ``queue_dropped_total`` record it;
    * :meth:`shutdown` stops dispatching at once, while passes already
      running are allowed to finish.
    """

    def __init__(
        self,
        name: str,
        reconcile: Callable[[Any], Any],
        *,
        max_attempts: int = 5,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        logger: logging.Logger | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.name = name
        self.reconcile = reconcile
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.monotonic = monotonic

        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._attempts: dict[Hashable, int] = {}
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._shutting_down = False
        self._cond = threading.Condition()
        METRICS.queue_depth.set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self.monotonic() + delay_seconds
            heapq.heappush(self._delayed, (due_at, next(self._sequence), key))
            self._cond.notify()

    def attempts(self, key: Hashable) -> int:
        with self._cond:
            return self._attempts.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - now)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready and mark it as processing.

        Returns ``None`` once the queue is shutting down, or when *timeout*
        elapses with nothing to do.
        """
        deadline = None if timeout is None else self.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    METRICS.queue_depth.set(len(self._queue))
                    return key
                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def _backoff(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * float(2 ** (attempt - 1)))

    def _handle_failure(self, key: Hashable) -> None:
        with self._cond:
            attempt = self._attempts.get(key, 0) + 1
            if attempt >= self.max_attempts:
                self._attempts.pop(key, None)
            else:
                self._attempts[key] = attempt

        if attempt >= self.max_attempts:
            METRICS.queue_dropped_total.inc()
            self.logger.error(
                "%s: dropping %s after %d failed attempts", self.name, key, attempt
            )
            return

        delay_seconds = self._backoff(attempt)
        METRICS.queue_retries_total.inc()
        self.logger.warning(
            "%s: reconcile of %s failed; scheduling retry attempt %d in %.1fs",
            self.name,
            key,
            attempt + 1,
            delay_seconds,
        )
        self.add_after(key, delay_seconds)

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one key.  Returns False when the queue is shutting down."""
        key = self.get(timeout=timeout)
        if key is None:
            return not self.shutting_down
        try:
            self.reconcile(key)
        except Exception:
            self.logger.exception("%s: error reconciling %s", self.name, key)
            self._handle_failure(key)
        else:
            with self._cond:
                self._attempts.pop(key, None)
        finally:
            self.done(key)
        return True

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _worker(self) -> None:
        while self.process_next():
            pass

    def run(self, stop_event: threading.Event, workers: int = 1) -> None:
        """Run *workers* threads until *stop_event* is set, then drain in-flight passes."""
        threads = [
            threading.Thread(target=self._worker, name=f"{self.name}-worker-{index}", daemon=True)
            for index in range(workers)
        ]
        for thread in threads:
            thread.start()
        self.logger.info("%s: started %d worker(s)", self.name, workers)

        stop_event.wait()
        self.shutdown()
        for thread in threads:
            thread.join()
        self.logger.info("%s: stopped", self.name)
