"""Tests for the bounded transcode executor."""

from __future__ import annotations

import threading
import time

import pytest

from mbtiles_compress.errors import ConfigurationError
from mbtiles_compress.limiter import BoundedExecutor


class _ActivityProbe:
    """Tracks how many calls run at the same time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def __call__(self, value: int, delay: float = 0.01) -> int:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(delay)
            return value
        finally:
            with self._lock:
                self.active -= 1


@pytest.mark.parametrize("bound", [1, 3])
def test_in_flight_tasks_never_exceed_bound(bound: int) -> None:
    probe = _ActivityProbe()
    results: list[int] = []

    with BoundedExecutor(bound) as executor:
        for value in range(12):
            _, finished = executor.submit(probe, value)
            assert executor.in_flight <= bound
            results.extend(future.result() for future in finished)
        results.extend(future.result() for future in executor.drain())

    assert sorted(results) == list(range(12))
    assert probe.peak <= bound


def test_bound_is_reached_when_tasks_overlap() -> None:
    barrier = threading.Barrier(3, timeout=10)

    def _wait_for_peers(value: int) -> int:
        barrier.wait()
        return value

    with BoundedExecutor(3) as executor:
        for value in range(3):
            executor.submit(_wait_for_peers, value)
        results = sorted(future.result() for future in executor.drain())

    assert results == [0, 1, 2]


def test_failures_surface_on_their_own_future() -> None:
    def _maybe_fail(value: int) -> int:
        if value == 2:
            raise ValueError("boom")
        return value

    with BoundedExecutor(2) as executor:
        futures = [executor.submit(_maybe_fail, value)[0] for value in range(5)]
        list(executor.drain())

    assert [f.exception() is not None for f in futures] == [False, False, True, False, False]


@pytest.mark.parametrize("bound", [0, 101, -3])
def test_bound_outside_supported_range_is_rejected(bound: int) -> None:
    with pytest.raises(ConfigurationError):
        BoundedExecutor(bound)


def test_leaving_on_error_clears_active_set() -> None:
    release = threading.Event()

    with pytest.raises(RuntimeError):
        with BoundedExecutor(2) as executor:
            executor.submit(release.wait, 5)
            release.set()
            raise RuntimeError("interrupted")

    assert executor.in_flight == 0
