"""Run counters and periodic progress reporting."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "progress"})


@dataclass(frozen=True)
class CompletionEvent:
    """Outcome of one transcode task."""

    tile_id: object
    ok: bool
    elapsed: float = 0.0
    error: str | None = None


@dataclass
class RunState:
    """Processed and failed counters for one run, plus total encode time.

    Only the coordinating thread mutates an instance, through
    :meth:`ProgressReporter.record`.
    """

    processed: int = 0
    failed: int = 0
    encode_seconds: float = 0.0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def succeeded(self) -> int:
        return self.processed - self.failed


@dataclass(frozen=True)
class ProgressSnapshot:
    processed: int
    failed: int
    total: int | None
    rate: float
    eta_seconds: float | None
    mean_encode_seconds: float | None = None


class ProgressReporter:
    """Consume completion events and log throughput every ``interval`` items."""

    def __init__(
        self,
        state: RunState,
        total: int | None = None,
        interval: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._state = state
        self._total = total
        self._interval = max(1, int(interval))
        self._clock = clock
        self._started = clock()
        self.reports = 0

    @property
    def state(self) -> RunState:
        return self._state

    def snapshot(self) -> ProgressSnapshot:
        elapsed = max(self._clock() - self._started, 1e-9)
        processed = self._state.processed
        rate = processed / elapsed
        eta: float | None = None
        if self._total is not None and rate > 0:
            eta = max(self._total - processed, 0) / rate
        return ProgressSnapshot(
            processed=processed,
            failed=self._state.failed,
            total=self._total,
            rate=rate,
            eta_seconds=eta,
            mean_encode_seconds=self._state.encode_seconds / self._state.succeeded if self._state.succeeded else None,
        )

    def record(self, event: CompletionEvent) -> None:
        self._state.processed += 1
        if event.ok:
            self._state.encode_seconds += event.elapsed
        else:
            self._state.failed += 1
        if self._state.processed % self._interval == 0:
            self._emit()

    def _emit(self) -> None:
        snap = self.snapshot()
        self.reports += 1
        LOGGER.info(
            "transcode_progress",
            extra={
                "processed": snap.processed,
                "total": snap.total,
                "failed": snap.failed,
                "tiles_per_second": round(snap.rate, 1),
                "eta_seconds": None if snap.eta_seconds is None else round(snap.eta_seconds, 1),
                "mean_encode_ms": None if snap.mean_encode_seconds is None else round(snap.mean_encode_seconds * 1000, 1),
            },
        )


__all__ = ["CompletionEvent", "ProgressReporter", "ProgressSnapshot", "RunState"]
