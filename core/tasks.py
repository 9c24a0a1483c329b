"""
Bounded, cancellable calls on a shared worker pool.

Every carrier request and every payment poll goes through TimeoutRunner:
the call is submitted to a ThreadPoolExecutor and the caller waits on it
with a deadline fixed at submission time. Calls submitted together keep
independent deadlines, so a slow call never eats into another call's
budget.

On expiry the future is cancelled (a no-op if it already started) and the
call's ``cancel_event`` is set. Blocking I/O inside the call must carry its
own timeout (requests' ``timeout=``) so the worker thread is eventually
released.

Usage:
    runner = TimeoutRunner(max_workers=8, thread_name_prefix="Carrier")

    calls = [runner.submit(fetch, code, timeout=8.0, operation=f"quote {code}")
             for code in ("04014", "04510")]
    for call in calls:
        try:
            result = call.result()
        except OperationTimeout:
            ...

    runner.shutdown()
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from .exceptions import OperationTimeout


class TimedCall:
    """
    Handle for one call submitted to TimeoutRunner.

    Attributes:
        operation: Label used in logs and in OperationTimeout
        timeout_seconds: Budget given at submission
        cancel_event: Set when the call is abandoned by its caller
    """

    def __init__(
        self,
        future: Future,
        operation: str,
        timeout_seconds: float,
        cancel_event: threading.Event
    ):
        self._future = future
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        self.cancel_event = cancel_event
        self._deadline = time.monotonic() + timeout_seconds

    @property
    def remaining_seconds(self) -> float:
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self) -> None:
        """Abandon the call. A running call keeps running until its own I/O returns."""
        self.cancel_event.set()
        self._future.cancel()

    def result(self) -> Any:
        """
        Wait for the call until its deadline.

        Returns:
            Whatever the callable returned

        Raises:
            OperationTimeout: If the deadline passed first
            Exception: Whatever the callable raised
        """
        try:
            return self._future.result(timeout=self.remaining_seconds)
        except FutureTimeoutError:
            self.cancel()
            raise OperationTimeout(self.operation, self.timeout_seconds) from None


class TimeoutRunner:
    """
    Shared worker pool for bounded calls.

    Thread Safety:
        - submit() may be called from any thread
        - Each TimedCall is owned by the thread that submitted it
    """

    def __init__(self, max_workers: int = 8, thread_name_prefix: str = "Worker"):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix
        )
        self._shutdown = False

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        timeout: float,
        operation: Optional[str] = None,
        **kwargs: Any
    ) -> TimedCall:
        """
        Start ``fn(*args, **kwargs)`` on the pool with its own deadline.

        Args:
            fn: Callable to run
            timeout: Seconds the caller is willing to wait, counted from now
            operation: Label for logs and timeout errors (defaults to fn name)

        Returns:
            TimedCall handle
        """
        if self._shutdown:
            raise RuntimeError("TimeoutRunner has been shut down")

        cancel_event = threading.Event()
        future = self._executor.submit(fn, *args, **kwargs)
        return TimedCall(
            future,
            operation or getattr(fn, "__name__", "call"),
            timeout,
            cancel_event
        )

    def run(
        self,
        fn: Callable[..., Any],
        *args: Any,
        timeout: float,
        operation: Optional[str] = None,
        **kwargs: Any
    ) -> Any:
        """Submit and wait in one step (used by poll iterations)."""
        return self.submit(fn, *args, timeout=timeout, operation=operation, **kwargs).result()

    def shutdown(self, wait: bool = False) -> None:
        self._shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=True)


class KeyedLocks:
    """
    One Lock per key, created on demand and dropped when nobody holds it.

    Usage:
        locks = KeyedLocks()
        with locks.hold(order_id):
            ...
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
