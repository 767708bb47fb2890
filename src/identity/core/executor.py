"""Bounded worker pool with caller-runs backpressure.

Wraps ``concurrent.futures.ThreadPoolExecutor`` with a bounded queue: at most
``max_threads + max_queue`` tasks may be pending or running. When that bound
is reached, the submitted task runs on the caller's thread and an already
completed future is returned, so work degrades to serial execution instead
of being rejected.

With ``enabled=False`` every task runs inline. Callers get the same futures
API and identical results, just serialized.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _run_inline(fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future[T]:
    """Run ``fn`` now and wrap its outcome in a completed future."""
    future: Future[T] = Future()
    try:
        result = fn(*args, **kwargs)
    except Exception as exc:
        future.set_exception(exc)
    else:
        future.set_result(result)
    return future


class ConcurrencyExecutor:
    """Fixed-size thread pool returning futures.

    Threads are started on demand by the underlying pool up to
    ``max_threads``. ``min_threads`` is validated against ``max_threads`` but
    informational only: ThreadPoolExecutor has no floor and never pre-spawns.

    Args:
        min_threads: Configured lower bound (informational, see above).
        max_threads: Worker threads (at most 10).
        max_queue: Tasks allowed to wait for a worker before caller-runs.
        enabled: When False, all tasks execute sequentially on the caller.
        name: Thread name prefix, also used in logs.
    """

    def __init__(
        self,
        min_threads: int = 2,
        max_threads: int = 10,
        max_queue: int = 100,
        enabled: bool = True,
        name: str = "identity",
    ) -> None:
        if not 1 <= min_threads <= max_threads <= 10:
            raise ValueError("require 1 <= min_threads <= max_threads <= 10")
        if max_queue < 0:
            raise ValueError("max_queue must be non-negative")

        self._min_threads = min_threads
        self._max_threads = max_threads
        self._max_queue = max_queue
        self._enabled = enabled
        self._name = name
        self._slots = threading.BoundedSemaphore(max_threads + max_queue)
        self._pool: ThreadPoolExecutor | None = None
        if enabled:
            self._pool = ThreadPoolExecutor(
                max_workers=max_threads,
                thread_name_prefix=name,
            )
            logger.debug(
                "executor.started",
                executor=name,
                min_threads=min_threads,
                max_threads=max_threads,
                max_queue=max_queue,
            )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def min_threads(self) -> int:
        return self._min_threads

    @property
    def max_threads(self) -> int:
        return self._max_threads

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future[T]:
        """Schedule ``fn(*args, **kwargs)`` and return its future."""
        if self._pool is None:
            return _run_inline(fn, *args, **kwargs)

        if not self._slots.acquire(blocking=False):
            logger.warning(
                "executor.queue_full_caller_runs",
                executor=self._name,
                capacity=self._max_threads + self._max_queue,
            )
            return _run_inline(fn, *args, **kwargs)

        try:
            future = self._pool.submit(fn, *args, **kwargs)
        except RuntimeError:
            self._slots.release()
            raise
        future.add_done_callback(lambda _f: self._slots.release())
        return future

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        """Stop accepting work and optionally wait for running tasks."""
        if self._pool is not None:
            self._pool.shutdown(wait=wait, cancel_futures=cancel_futures)
            logger.info("executor.shutdown", executor=self._name, waited=wait)

    def __enter__(self) -> ConcurrencyExecutor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)
