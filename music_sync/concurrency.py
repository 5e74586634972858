from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional

DEFAULT_JOBS = 8
POLL_INTERVAL = 0.1


class CancelScope:
    """Shared cancellation signal plus a set-once slot for the first failure.

    Every worker of a run shares one scope. The first call to :meth:`fail`
    stores its error and cancels the scope; later errors are dropped.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._error: Optional[BaseException] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def error(self) -> Optional[BaseException]:
        with self._lock:
            return self._error

    def cancel(self) -> None:
        self._event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; returns ``cancelled``."""
        return self._event.wait(timeout)

    def fail(self, error: BaseException) -> bool:
        with self._lock:
            won = self._error is None
            if won:
                self._error = error
        self.cancel()
        return won


class Limiter:
    """Counting admission gate bounding how many transcodes run at once."""

    def __init__(self, bound: int = DEFAULT_JOBS) -> None:
        if bound < 1:
            raise ValueError(f"Limiter bound must be at least 1, got {bound}")
        self.bound = bound
        self._slots = threading.BoundedSemaphore(bound)

    def acquire(self, scope: CancelScope) -> bool:
        # Admission is never granted to a cancelled run, even if a slot is free.
        while not scope.cancelled:
            if self._slots.acquire(timeout=POLL_INTERVAL):
                if scope.cancelled:
                    self._slots.release()
                    return False
                return True
        return False

    def release(self) -> None:
        self._slots.release()

    @contextmanager
    def admit(self, scope: CancelScope) -> Iterator[bool]:
        admitted = self.acquire(scope)
        try:
            yield admitted
        finally:
            if admitted:
                self.release()


class TaskGroup:
    """Run tasks on a bounded thread pool and wait for all of them before leaving.

    Submitting never blocks, so the caller keeps walking while earlier tasks
    run. Exceptions escaping a task are handed to the scope, so the first one
    cancels the remaining work the same way a reported failure does. Leaving
    the block early (Ctrl-C while waiting included) cancels the scope and
    still waits for every task.
    """

    def __init__(self, scope: CancelScope, max_workers: int = DEFAULT_JOBS, name: str = "convert") -> None:
        self.scope = scope
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._futures: List[Future] = []
        self._outstanding = 0
        self._lock = threading.Lock()

    @property
    def outstanding(self) -> int:
        with self._lock:
            return self._outstanding

    def spawn(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        with self._lock:
            self._outstanding += 1
        try:
            future = self._pool.submit(self._run, fn, args, kwargs)
        except BaseException:
            self._done(None)
            raise
        future.add_done_callback(self._done)
        self._futures.append(future)

    def join(self) -> None:
        # Short waits keep the calling thread responsive to KeyboardInterrupt.
        pending = set(self._futures)
        while pending:
            _, pending = wait(pending, timeout=POLL_INTERVAL)

    def _run(self, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            logging.debug("Task %s raised %r", threading.current_thread().name, exc)
            self.scope.fail(exc)

    def _done(self, future: Optional[Future]) -> None:
        with self._lock:
            self._outstanding -= 1

    def _abandon(self) -> None:
        self.scope.cancel()
        for future in self._futures:
            future.cancel()

    def __enter__(self) -> TaskGroup:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self._abandon()
        try:
            self.join()
        except BaseException:
            self._abandon()
            self.join()
            raise
        finally:
            self._pool.shutdown(wait=True)
