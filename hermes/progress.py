"""
Scan progress bookkeeping.

The scheduler pushes (completed, total, elapsed) events; renderers either
subscribe to them or sample snapshot() from another thread. Updates are
constant time and never wait on a renderer.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    completed: int
    total: int
    elapsed: float  # seconds since the scan started
    finished: bool = False


@dataclass(frozen=True)
class ProgressState:
    completed: int
    total: int
    elapsed: float
    fraction_complete: float
    rate: float              # attempts per second, smoothed
    eta: Optional[float]     # seconds, None until a rate is known
    finished: bool = False


class ProgressReporter:
    """
    Derives fraction complete, smoothed rate and ETA from progress events.

    Rate is an exponential moving average of the rate observed between
    consecutive updates, seeded with the overall average.
    """

    def __init__(self, smoothing: float = 0.3):
        if not 0 < smoothing <= 1:
            raise ValueError("smoothing must be in (0, 1]")
        self.smoothing = smoothing
        self._lock = threading.Lock()
        self._listeners: List[Callable[[ProgressEvent], None]] = []
        self._completed = 0
        self._total = 0
        self._elapsed = 0.0
        self._rate = 0.0
        self._finished = False
        self.events = 0

    def subscribe(self, listener: Callable[[ProgressEvent], None]):
        with self._lock:
            self._listeners.append(listener)

    def update(self, event: ProgressEvent):
        with self._lock:
            self.events += 1
            delta_done = event.completed - self._completed
            delta_time = event.elapsed - self._elapsed

            if delta_done > 0 and delta_time > 0:
                instant = delta_done / delta_time
                if self._rate == 0.0:
                    self._rate = event.completed / event.elapsed if event.elapsed > 0 else instant
                else:
                    self._rate += self.smoothing * (instant - self._rate)

            # Counts only move forward even if events arrive out of order
            self._completed = max(self._completed, event.completed)
            self._total = event.total
            self._elapsed = max(self._elapsed, event.elapsed)
            if event.finished:
                self._finished = True
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed")

    def finish(self, event: ProgressEvent):
        if not event.finished:
            event = ProgressEvent(event.completed, event.total, event.elapsed, finished=True)
        self.update(event)

    def snapshot(self) -> ProgressState:
        with self._lock:
            completed, total, rate = self._completed, self._total, self._rate
            if total > 0:
                fraction = min(1.0, completed / total)
            else:
                fraction = 1.0 if self._finished else 0.0
            remaining = max(0, total - completed)
            if remaining == 0 and total > 0:
                eta = 0.0
            elif rate > 0:
                eta = remaining / rate
            else:
                eta = None
            return ProgressState(
                completed=completed,
                total=total,
                elapsed=self._elapsed,
                fraction_complete=fraction,
                rate=rate,
                eta=eta,
                finished=self._finished,
            )

    @property
    def fraction_complete(self) -> float:
        return self.snapshot().fraction_complete

    @property
    def rate(self) -> float:
        return self.snapshot().rate

    @property
    def eta(self) -> Optional[float]:
        return self.snapshot().eta
