from __future__ import annotations

from typing import Dict, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import threading
import time


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class Stopwatch:
    """
    Per-run stage timer. Each pipeline call owns one, so concurrent runs
    never share a start time.

    Usage:
        sw = Stopwatch()
        ... work ...
        sw.lap("detect")      # ms since previous lap
        sw.total()            # ms since construction
    """
    _t0: float = field(default_factory=time.perf_counter)
    _last: float = 0.0
    laps: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._last = self._t0

    def lap(self, name: str) -> float:
        now = time.perf_counter()
        dt_ms = (now - self._last) * 1e3
        self._last = now
        self.laps[name] = self.laps.get(name, 0.0) + dt_ms
        return dt_ms

    def total(self) -> float:
        return (time.perf_counter() - self._t0) * 1e3


class Deadline:
    """
    Absolute deadline on the monotonic clock, optionally tied to a
    cancellation token (threading.Event).

    Deadline(None) never expires.
    """

    def __init__(self, timeout_s: Optional[float] = None, cancel: Optional[threading.Event] = None):
        self._end = None if timeout_s is None else time.monotonic() + float(timeout_s)
        self.cancel = cancel

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left (>= 0), or None without a deadline."""
        if self._end is None:
            return None
        return max(0.0, self._end - time.monotonic())

    def expired(self) -> bool:
        return self._end is not None and time.monotonic() >= self._end

    def timeout_for(self, default_s: float) -> float:
        """Request timeout that never overshoots the deadline."""
        rem = self.remaining()
        return float(default_s) if rem is None else min(float(default_s), rem)
