from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable

_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")


class ThroughputMeter:
    """Bytes/second over a trailing time window, plus an ETA projection."""

    def __init__(self, window_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_seconds = window_seconds
        self._clock = clock
        self._samples: deque[tuple[float, int]] = deque()
        self._started_at = clock()

    def record(self, nbytes: int) -> None:
        now = self._clock()
        self._samples.append((now, nbytes))
        self._trim(now)

    def _trim(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def speed(self) -> float:
        now = self._clock()
        self._trim(now)
        if not self._samples:
            return 0.0
        # Early in an upload the window is only as long as the upload has run.
        span = min(self.window_seconds, now - self._started_at)
        if span <= 0:
            return 0.0
        return sum(nbytes for _, nbytes in self._samples) / span

    def eta(self, remaining_bytes: int) -> float:
        if remaining_bytes <= 0:
            return 0.0
        current = self.speed()
        if current <= 0:
            return math.inf
        return remaining_bytes / current


def format_bytes(num_bytes: float, decimals: int = 2) -> str:
    if num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(_BYTE_UNITS) - 1:
        value /= 1024
        exponent += 1
    return f"{round(value, max(0, decimals)):g} {_BYTE_UNITS[exponent]}"


def format_speed(bytes_per_second: float) -> str:
    return f"{format_bytes(bytes_per_second)}/s"


def format_duration(seconds: float) -> str:
    if not math.isfinite(seconds) or seconds < 0:
        return "--:--"
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
