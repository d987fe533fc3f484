"""Admission control for concurrent transcode tasks."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any

from mbtiles_compress.config import MAX_CONCURRENCY
from mbtiles_compress.errors import ConfigurationError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "limiter"})


class BoundedExecutor:
    """Thread pool that never holds more than ``max_in_flight`` outstanding tasks.

    The caller owns a single coordinating thread. :meth:`submit` first blocks
    until a slot is free and hands back every task that finished meanwhile,
    so results are consumed on the coordinating thread in completion order
    and no finished output is buffered beyond the active set.
    """

    def __init__(self, max_in_flight: int, thread_name_prefix: str = "transcode") -> None:
        if isinstance(max_in_flight, bool) or not isinstance(max_in_flight, int) or not 1 <= max_in_flight <= MAX_CONCURRENCY:
            raise ConfigurationError(f"Concurrency must be a number between 1 and {MAX_CONCURRENCY}, got {max_in_flight!r}")
        self._max_in_flight = max_in_flight
        self._executor = ThreadPoolExecutor(max_workers=max_in_flight, thread_name_prefix=thread_name_prefix)
        self._active: set[Future[Any]] = set()

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def in_flight(self) -> int:
        return len(self._active)

    def _reap(self, block: bool) -> list[Future[Any]]:
        if not self._active:
            return []
        done, _ = wait(self._active, timeout=None if block else 0, return_when=FIRST_COMPLETED)
        self._active.difference_update(done)
        return list(done)

    def submit(self, fn: Callable[..., Any], *args: Any) -> tuple[Future[Any], list[Future[Any]]]:
        """Schedule ``fn(*args)`` once a slot is free.

        Returns:
            The new future and the futures that completed while waiting for
            admission (possibly empty).
        """

        completed = self._reap(block=False)
        while len(self._active) >= self._max_in_flight:
            completed.extend(self._reap(block=True))

        future = self._executor.submit(fn, *args)
        self._active.add(future)
        return future, completed

    def drain(self) -> Iterator[Future[Any]]:
        """Yield every remaining task as it completes."""

        while self._active:
            yield from self._reap(block=True)

    def shutdown(self, cancel: bool = False) -> None:
        """Stop the pool; ``cancel`` drops tasks that have not started yet."""

        if cancel and self._active:
            LOGGER.warning("transcode_tasks_cancelled", extra={"in_flight": len(self._active)})
        self._executor.shutdown(wait=True, cancel_futures=cancel)
        if cancel:
            self._active.clear()

    def __enter__(self) -> "BoundedExecutor":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.shutdown(cancel=exc_type is not None)


__all__ = ["BoundedExecutor"]
