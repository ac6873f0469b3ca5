"""Per-domain polling lifecycle with timeouts and last-known-good caching."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable

from .history import DEFAULT_CAPACITY, HistoryBuffer
from .models import DomainError, DomainSnapshot, ErrorKind, Sample, SamplerState
from .rates import RateTracker
from .sources import SourceAdapter, SourceTransient, classify


_log = logging.getLogger("pmon.sampler")

# Scheduler ticks land on a fixed grid; float error must not make a due sampler look early.
_DUE_SLACK_S = 0.001


@dataclass
class SamplerStats:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    discarded: int = 0
    skipped_busy: int = 0
    last_duration_s: float = 0.0


class Sampler:
    """Owns one ``SourceAdapter``: cadence, timeout, cached snapshot, history.

    Collections for one sampler never overlap. A tick that arrives while an
    attempt is outstanding is skipped, not queued. An attempt that overruns
    ``timeout_s`` is abandoned; if the call returns later its result is dropped.
    """

    def __init__(
        self,
        adapter: SourceAdapter,
        cadence_s: float,
        timeout_s: float | None = None,
        history_size: int = DEFAULT_CAPACITY,
        name: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if cadence_s <= 0:
            raise ValueError("cadence_s must be positive")
        timeout = cadence_s * 0.8 if timeout_s is None else float(timeout_s)
        if not 0 < timeout < cadence_s:
            raise ValueError(f"timeout_s must be in (0, cadence_s); got {timeout} for cadence {cadence_s}")

        self.adapter = adapter
        self.name = name or adapter.domain
        self.cadence_s = float(cadence_s)
        self.timeout_s = timeout
        self._clock = clock

        self._lock = threading.RLock()
        self._state = SamplerState.IDLE
        self._attempt = 0
        self._started_at: float | None = None
        self._deadline: float | None = None
        self._last_attempt_at: float | None = None
        self._unavailable = False
        self._failures = 0
        self._error_since: datetime | None = None
        self._snapshot: DomainSnapshot | None = None

        self._rates = RateTracker()
        self._history: HistoryBuffer[Sample[Any]] = HistoryBuffer(history_size)
        self.stats = SamplerStats()

    @property
    def state(self) -> SamplerState:
        return self._state

    @property
    def snapshot(self) -> DomainSnapshot | None:
        return self._snapshot

    @property
    def unavailable(self) -> bool:
        return self._unavailable

    def history(self) -> tuple[Sample[Any], ...]:
        return self._history.snapshot()

    def is_due(self, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        with self._lock:
            return self._is_due_locked(now)

    def _is_due_locked(self, now: float) -> bool:
        if self._state is not SamplerState.IDLE or self._unavailable:
            return False
        if self._last_attempt_at is None:
            return True
        return (now - self._last_attempt_at) >= (self.cadence_s - _DUE_SLACK_S)

    def tick(self, now: float | None = None) -> bool:
        """Start a background collection if one is due. Returns True when started."""
        now = self._clock() if now is None else now
        with self._lock:
            if self._state is SamplerState.STOPPED:
                return False
            self._expire_locked(now)
            if self._state is SamplerState.COLLECTING:
                self.stats.skipped_busy += 1
                return False
            if not self._is_due_locked(now):
                return False
            attempt = self._begin_locked(now)

        self._launch(attempt)
        return True

    def collect_now(self) -> DomainSnapshot | None:
        """Run one attempt immediately and wait at most ``timeout_s`` for it."""
        with self._lock:
            if self._state is not SamplerState.IDLE:
                return self._snapshot
            attempt = self._begin_locked(self._clock())

        worker = self._launch(attempt)
        if worker is not None:
            worker.join(self.timeout_s)
        with self._lock:
            if attempt == self._attempt and self._state is SamplerState.COLLECTING:
                self._expire_locked(force=True)
            return self._snapshot

    def mark_failed(self, exc: BaseException, kind: ErrorKind = ErrorKind.TRANSIENT) -> None:
        """Record a failure raised outside the adapter call (bookkeeping, thread start)."""
        with self._lock:
            if self._state is SamplerState.COLLECTING:
                self._attempt += 1
            self._record_failure_locked(exc, kind)

    def stop(self) -> None:
        with self._lock:
            if self._state is SamplerState.STOPPED:
                return
            self._attempt += 1
            self._state = SamplerState.STOPPED
            self._deadline = None

    def close(self) -> None:
        """Stop for good and release the adapter's resources."""
        self.stop()
        try:
            self.adapter.close()
        except Exception:
            _log.exception("%s adapter close failed", self.name, extra={"event": "adapter_close_error"})

    def resume(self) -> None:
        with self._lock:
            if self._state is SamplerState.STOPPED:
                self._state = SamplerState.IDLE

    def _begin_locked(self, now: float) -> int:
        self._attempt += 1
        self._state = SamplerState.COLLECTING
        self._last_attempt_at = now
        self._started_at = self._clock()
        # Deadline sits on the tick grid, same as the due check.
        self._deadline = now + self.timeout_s
        self.stats.attempts += 1
        return self._attempt

    def _launch(self, attempt: int) -> threading.Thread | None:
        worker = threading.Thread(
            target=self._run,
            args=(attempt,),
            name=f"pmon-{self.name}-{attempt}",
            daemon=True,
        )
        try:
            worker.start()
        except RuntimeError as exc:
            with self._lock:
                if attempt == self._attempt:
                    self._record_failure_locked(exc, ErrorKind.TRANSIENT)
            return None
        return worker

    def _expire_locked(self, now: float | None = None, force: bool = False) -> None:
        if self._state is not SamplerState.COLLECTING or self._deadline is None:
            return
        current = self._clock() if now is None else max(now, self._clock())
        if not force and current <= self._deadline:
            return
        self._attempt += 1
        self.stats.timeouts += 1
        self._record_failure_locked(
            SourceTransient(f"{self.name} collect timed out after {self.timeout_s:.2f}s"),
            ErrorKind.TRANSIENT,
        )

    def _run(self, attempt: int) -> None:
        try:
            reading = self.adapter.collect(self.timeout_s)
        except Exception as exc:
            with self._lock:
                if not self._owns_locked(attempt):
                    return
                self._record_failure_locked(exc)
            return

        finished = self._clock()
        with self._lock:
            if not self._owns_locked(attempt):
                return
            if self._deadline is not None and finished > self._deadline:
                self._attempt += 1
                self.stats.timeouts += 1
                self.stats.discarded += 1
                self._record_failure_locked(
                    SourceTransient(f"{self.name} collect returned after its {self.timeout_s:.2f}s deadline"),
                    ErrorKind.TRANSIENT,
                )
                return
            try:
                self._accept_locked(reading, finished)
            except Exception as exc:
                _log.exception(
                    "%s bookkeeping failed", self.name, extra={"event": "sampler_bookkeeping_error"}
                )
                self._record_failure_locked(exc, ErrorKind.TRANSIENT)

    def _owns_locked(self, attempt: int) -> bool:
        if attempt == self._attempt and self._state is SamplerState.COLLECTING:
            return True
        self.stats.discarded += 1
        _log.debug("%s dropped late result for attempt %s", self.name, attempt)
        return False

    def _accept_locked(self, reading: Any, finished: float) -> None:
        counters = self.adapter.counters(reading)
        rates = self._rates.observe_many(counters, finished)
        for gone in set(self._rates.streams()) - counters.keys():
            # Streams missing from this reading belong to removed interfaces or disks.
            self._rates.forget(gone)
        point = self.adapter.history_point(reading, rates)

        ts = datetime.now(timezone.utc)
        if point is not None:
            self._history.push(Sample(value=point, timestamp=ts))

        if self._error_since is not None:
            _log.info(
                "%s recovered after %s failure(s)",
                self.name,
                self._failures,
                extra={"event": "sampler_recovered"},
            )
        self._snapshot = DomainSnapshot(
            domain=self.name,
            data=reading,
            timestamp=ts,
            rates=rates,
            history=self._history.snapshot(),
        )
        self._failures = 0
        self._error_since = None
        self.stats.successes += 1
        self.stats.last_duration_s = max(finished - (self._started_at or finished), 0.0)
        self._settle_locked()

    def _record_failure_locked(self, exc: BaseException, kind: ErrorKind | None = None) -> None:
        kind = kind or classify(exc)
        now = datetime.now(timezone.utc)
        message = str(exc) or exc.__class__.__name__

        if kind is ErrorKind.UNAVAILABLE and (self._snapshot is None or not self._snapshot.available):
            if not self._unavailable:
                _log.info("%s not present: %s", self.name, message, extra={"event": "domain_unavailable"})
            self._unavailable = True
            self._snapshot = DomainSnapshot(domain=self.name, data=None, timestamp=now, available=False, reason=message)
            self._settle_locked()
            return

        if kind is ErrorKind.UNAVAILABLE:
            # Previously present hardware vanished; keep its last values and keep retrying.
            kind = ErrorKind.TRANSIENT

        self._failures += 1
        self.stats.failures += 1
        if self._error_since is None:
            self._error_since = now
        error = DomainError(kind=kind, message=message, consecutive_failures=self._failures, since=self._error_since)
        if self._snapshot is not None:
            self._snapshot = replace(self._snapshot, error=error)

        if kind is ErrorKind.UNKNOWN:
            _log.error(
                "%s collect failed: %s",
                self.name,
                message,
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"event": "sampler_error"},
            )
        else:
            _log.warning("%s collect failed: %s", self.name, message, extra={"event": "sampler_transient"})
        self._settle_locked()

    def _settle_locked(self) -> None:
        if self._state is not SamplerState.STOPPED:
            self._state = SamplerState.IDLE
        self._deadline = None
        self._started_at = None
