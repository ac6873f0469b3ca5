"""Multi-cadence scheduler that merges sampler outputs into composite snapshots."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .models import DOMAINS, CompositeSnapshot, SamplerState
from .publisher import Publisher
from .sampler import Sampler


_log = logging.getLogger("pmon.scheduler")


class Scheduler:
    """Drives every sampler from one fixed-rate tick and publishes on each tick.

    Each tick asks every sampler whether it is due and starts those that are,
    then assembles a composite from whatever each sampler has cached right
    now. In-flight collections of the same tick are not awaited, so a slow
    domain shows up one tick later instead of delaying the others.
    """

    def __init__(
        self,
        samplers: Iterable[Sampler],
        publisher: Publisher | None = None,
        tick_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if tick_s <= 0:
            raise ValueError("tick_s must be positive")
        self._samplers: dict[str, Sampler] = {}
        for sampler in samplers:
            if sampler.name not in DOMAINS:
                raise ValueError(f"unknown domain {sampler.name!r}; expected one of {', '.join(DOMAINS)}")
            if sampler.name in self._samplers:
                raise ValueError(f"duplicate sampler for domain {sampler.name!r}")
            self._samplers[sampler.name] = sampler

        self.publisher = publisher or Publisher()
        self.tick_s = float(tick_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._latest: CompositeSnapshot | None = None
        self.ticks = 0
        self.overruns = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def samplers(self) -> dict[str, Sampler]:
        return dict(self._samplers)

    def get_latest(self) -> CompositeSnapshot | None:
        return self._latest

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            for sampler in self._samplers.values():
                sampler.resume()
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                name="pmon-scheduler",
                daemon=True,
            )
            self._thread.start()
        _log.info(
            "scheduler started with %s sampler(s) at %.3fs tick",
            len(self._samplers),
            self.tick_s,
            extra={"event": "scheduler_started"},
        )

    def stop(self) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            self._thread = None

        if thread is not threading.current_thread():
            thread.join(self.tick_s + self._max_timeout())

        # In-flight collections get at most one timeout period to land.
        grace_until = time.monotonic() + self._max_timeout()
        while time.monotonic() < grace_until and any(
            s.state is SamplerState.COLLECTING for s in self._samplers.values()
        ):
            time.sleep(0.01)
        for sampler in self._samplers.values():
            sampler.stop()
        _log.info("scheduler stopped after %s tick(s)", self.ticks, extra={"event": "scheduler_stopped"})

    def close(self) -> None:
        """Stop, then close every adapter and the publisher's subscriber threads."""
        self.stop()
        for sampler in self._samplers.values():
            sampler.close()
        self.publisher.close()
        _log.info("scheduler closed", extra={"event": "scheduler_closed"})

    def _max_timeout(self) -> float:
        return max((s.timeout_s for s in self._samplers.values()), default=0.0)

    def _loop(self, stop_event: threading.Event) -> None:
        epoch = self._clock()
        index = 0
        while not stop_event.is_set():
            self.tick(epoch + index * self.tick_s)
            index += 1
            now = self._clock()
            behind = now - (epoch + index * self.tick_s)
            if behind > self.tick_s:
                skipped = int(behind // self.tick_s)
                index += skipped
                self.overruns += skipped
                _log.warning("scheduler fell behind, skipped %s tick(s)", skipped, extra={"event": "tick_overrun"})
            wait_for = max(epoch + index * self.tick_s - self._clock(), 0.0)
            if stop_event.wait(wait_for):
                break

    def tick(self, now: float | None = None) -> CompositeSnapshot:
        now = self._clock() if now is None else now
        for sampler in self._samplers.values():
            try:
                sampler.tick(now)
            except Exception as exc:
                _log.exception("%s tick failed", sampler.name, extra={"event": "sampler_tick_error"})
                try:
                    sampler.mark_failed(exc)
                except Exception:
                    _log.exception("%s failure bookkeeping failed", sampler.name)

        composite = self.assemble()
        self._latest = composite
        self.ticks += 1
        try:
            self.publisher.publish(composite)
        except Exception:
            _log.exception("publish failed", extra={"event": "publish_error"})
        return composite

    def assemble(self) -> CompositeSnapshot:
        return CompositeSnapshot(
            timestamp=datetime.now(timezone.utc),
            **{name: sampler.snapshot for name, sampler in self._samplers.items()},
        )

    def collect_once(self) -> CompositeSnapshot:
        """Collect every domain once in parallel, bounded by each sampler's timeout."""
        samplers = list(self._samplers.values())
        if samplers:
            with ThreadPoolExecutor(max_workers=len(samplers), thread_name_prefix="pmon-once") as pool:
                list(pool.map(lambda s: s.collect_now(), samplers))
        composite = self.assemble()
        self._latest = composite
        return composite

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "tick_s": self.tick_s,
            "ticks": self.ticks,
            "overruns": self.overruns,
            "subscribers": self.publisher.subscriber_count(),
            "samplers": {
                name: {
                    "state": sampler.state.value,
                    "cadence_s": sampler.cadence_s,
                    "timeout_s": sampler.timeout_s,
                    "unavailable": sampler.unavailable,
                    **asdict(sampler.stats),
                }
                for name, sampler in self._samplers.items()
            },
        }
