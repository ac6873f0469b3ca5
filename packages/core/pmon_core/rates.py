"""Rate derivation from cumulative counters."""

from __future__ import annotations

import threading

from .models import CounterPair, RateResult


class RateTracker:
    """Per-stream counter-to-rate conversion.

    Every observation becomes the new baseline, including anomalous ones
    (counter resets, non-advancing clocks), so tracking recovers on the next
    sample. Returned rates are never negative.
    """

    def __init__(self) -> None:
        self._last: dict[str, CounterPair] = {}
        self._lock = threading.Lock()

    def observe(self, stream_key: str, counter_value: int, timestamp: float) -> RateResult:
        current = CounterPair(cumulative_value=int(counter_value), timestamp=float(timestamp))
        with self._lock:
            previous = self._last.get(stream_key)
            self._last[stream_key] = current

        if previous is None:
            return RateResult(0.0)

        dt = current.timestamp - previous.timestamp
        if dt <= 0:
            return RateResult(0.0)

        delta = max(current.cumulative_value - previous.cumulative_value, 0)
        return RateResult(delta / dt)

    def observe_many(self, counters: dict[str, int], timestamp: float) -> dict[str, float]:
        return {key: self.observe(key, value, timestamp).rate_per_second for key, value in counters.items()}

    def forget(self, stream_key: str) -> None:
        with self._lock:
            self._last.pop(stream_key, None)

    def streams(self) -> list[str]:
        with self._lock:
            return sorted(self._last)

    def reset(self) -> None:
        with self._lock:
            self._last.clear()
