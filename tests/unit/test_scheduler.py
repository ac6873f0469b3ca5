import random
import sys
import threading
import time
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import FakeClock, FakeReading, HangingAdapter, ScriptedAdapter, wait_until
from pmon_core.models import DOMAINS, ErrorKind, SamplerState
from pmon_core.publisher import Publisher
from pmon_core.sampler import Sampler
from pmon_core.scheduler import Scheduler
from pmon_core.sources import SourceTransient


def _all_idle(scheduler):
    return wait_until(lambda: all(s.state is SamplerState.IDLE for s in scheduler.samplers.values()))


class SchedulerTests(unittest.TestCase):
    def test_rejects_unknown_and_duplicate_domains(self):
        with self.assertRaises(ValueError):
            Scheduler([Sampler(ScriptedAdapter(domain="fan"), cadence_s=1.0)])
        with self.assertRaises(ValueError):
            Scheduler([Sampler(ScriptedAdapter(), cadence_s=1.0), Sampler(ScriptedAdapter(), cadence_s=1.0)])

    def test_tick_publishes_cached_values_without_waiting(self):
        clock = FakeClock()
        sched = Scheduler([Sampler(ScriptedAdapter(), cadence_s=1.0, timeout_s=0.5, clock=clock)], clock=clock)
        seen = []
        sched.publisher.subscribe(seen.append)

        self.assertIsNone(sched.get_latest())
        sched.tick(0.0)
        self.assertTrue(_all_idle(sched))
        composite = sched.tick(0.5)
        self.assertEqual(composite.cpu.data.usage, 42.0)
        self.assertIsNone(composite.memory)
        self.assertIs(sched.get_latest(), composite)
        self.assertEqual(len(seen), 2)
        self.assertEqual(sched.ticks, 2)

    def test_domains_run_at_their_own_cadence(self):
        clock = FakeClock()
        fast = ScriptedAdapter(domain="cpu")
        medium = ScriptedAdapter(domain="storage")
        slow = ScriptedAdapter(domain="motherboard")
        sched = Scheduler(
            [
                Sampler(fast, cadence_s=1.0, timeout_s=0.5, clock=clock),
                Sampler(medium, cadence_s=3.0, timeout_s=2.0, clock=clock),
                Sampler(slow, cadence_s=10.0, timeout_s=5.0, clock=clock),
            ],
            clock=clock,
        )
        for second in range(12):
            sched.tick(float(second))
            self.assertTrue(_all_idle(sched))
        self.assertEqual(fast.calls, 12)
        self.assertEqual(medium.calls, 4)
        self.assertEqual(slow.calls, 2)

    def test_domain_presence_is_monotonic(self):
        rng = random.Random(3)
        steps = [SourceTransient("boot")] + [
            FakeReading(usage=float(i)) if rng.random() < 0.5 else SourceTransient(f"fail {i}") for i in range(40)
        ]
        clock = FakeClock()
        sched = Scheduler([Sampler(ScriptedAdapter(steps=steps), cadence_s=1.0, timeout_s=0.5, clock=clock)], clock=clock)

        seen_present = False
        for second in range(len(steps) + 1):
            composite = sched.tick(float(second))
            self.assertTrue(_all_idle(sched))
            if seen_present:
                self.assertIsNotNone(composite.cpu)
            seen_present = seen_present or composite.cpu is not None
            if composite.cpu is not None and composite.cpu.error is not None:
                self.assertEqual(composite.cpu.error.kind, ErrorKind.TRANSIENT)
        self.assertTrue(seen_present)

    def test_sampler_bookkeeping_crash_is_contained(self):
        class Exploding(Sampler):
            explode = False

            def tick(self, now=None):
                if self.explode:
                    raise RuntimeError("bookkeeping bug")
                return super().tick(now)

        clock = FakeClock()
        boom = Exploding(ScriptedAdapter(domain="memory"), cadence_s=1.0, timeout_s=0.5, clock=clock)
        other = Sampler(ScriptedAdapter(domain="cpu"), cadence_s=1.0, timeout_s=0.5, clock=clock)
        sched = Scheduler([boom, other], clock=clock)
        sched.tick(0.0)
        self.assertTrue(_all_idle(sched))

        boom.explode = True
        with self.assertLogs("pmon.scheduler", level="ERROR"):
            composite = sched.tick(1.0)
        self.assertTrue(_all_idle(sched))
        self.assertEqual(sched.get_latest().memory.error.kind, ErrorKind.TRANSIENT)
        self.assertIsNotNone(composite.cpu)
        self.assertEqual(other.adapter.calls, 2)

    def test_hanging_domain_does_not_block_others_or_publishing(self):
        hang = HangingAdapter(domain="gpu")
        sched = Scheduler(
            [
                Sampler(ScriptedAdapter(domain="cpu"), cadence_s=0.1, timeout_s=0.05),
                Sampler(hang, cadence_s=0.1, timeout_s=0.05),
            ],
            tick_s=0.05,
        )
        published = []
        sched.publisher.subscribe(published.append)
        sched.start()
        try:
            time.sleep(0.8)
        finally:
            sched.stop()
            hang.release.set()

        self.assertGreaterEqual(len(published), 8)
        cpu_stamps = {snap.cpu.timestamp for snap in published if snap.cpu is not None}
        self.assertGreaterEqual(len(cpu_stamps), 3)
        self.assertIsNone(published[-1].gpu)
        self.assertGreaterEqual(sched.samplers["gpu"].stats.timeouts, 2)

    def test_start_and_stop_are_idempotent(self):
        sched = Scheduler([Sampler(ScriptedAdapter(), cadence_s=0.2, timeout_s=0.1)], tick_s=0.1)
        sched.start()
        sched.start()
        self.assertTrue(sched.running)
        sched.stop()
        sched.stop()
        self.assertFalse(sched.running)
        self.assertEqual(sched.samplers["cpu"].state, SamplerState.STOPPED)
        sched.start()
        self.assertTrue(sched.running)
        sched.stop()

    def test_stop_returns_within_one_timeout_of_a_hung_collect(self):
        hang = HangingAdapter(domain="gpu")
        sched = Scheduler([Sampler(hang, cadence_s=1.0, timeout_s=0.3)], tick_s=0.1)
        sched.start()
        try:
            self.assertTrue(wait_until(lambda: hang.calls == 1))
            started = time.monotonic()
            sched.stop()
            elapsed = time.monotonic() - started
        finally:
            hang.release.set()
        self.assertLess(elapsed, 0.1 + 0.3 + 0.3)
        self.assertFalse(sched.running)
        self.assertEqual(sched.samplers["gpu"].state, SamplerState.STOPPED)

    def test_result_finishing_after_restart_is_discarded(self):
        class GatedOnce(ScriptedAdapter):
            def __init__(self):
                super().__init__(domain="cpu")
                self.gate = threading.Event()

            def collect(self, timeout_s):
                with self._lock:
                    first = self.calls == 0
                    self.calls += 1
                if first:
                    self.gate.wait()
                    return FakeReading(usage=-1.0)
                return FakeReading(usage=42.0)

        adapter = GatedOnce()
        sched = Scheduler([Sampler(adapter, cadence_s=0.2, timeout_s=0.15)], tick_s=0.05)
        sampler = sched.samplers["cpu"]
        published = []
        sched.publisher.subscribe(published.append)

        sched.start()
        self.assertTrue(wait_until(lambda: adapter.calls == 1))
        sched.stop()
        sched.start()
        try:
            adapter.gate.set()
            self.assertTrue(wait_until(lambda: sampler.stats.discarded >= 1))
            self.assertTrue(wait_until(lambda: sampler.snapshot is not None and sampler.snapshot.data.usage == 42.0))
        finally:
            sched.stop()
        usages = {snap.cpu.data.usage for snap in published if snap.cpu is not None}
        self.assertNotIn(-1.0, usages)
        self.assertEqual(sampler.stats.successes, len(sampler.history()))

    def test_close_releases_adapters_and_subscriber_threads(self):
        class Closing(ScriptedAdapter):
            closed = 0

            def close(self):
                self.closed += 1

        cpu, gpu = Closing(domain="cpu"), Closing(domain="gpu")
        sched = Scheduler([Sampler(cpu, cadence_s=0.2, timeout_s=0.1), Sampler(gpu, cadence_s=0.2, timeout_s=0.1)], tick_s=0.1)
        sched.publisher.subscribe(lambda snap: None, threaded=True)
        mailbox = next(iter(sched.publisher._mailboxes.values()))
        sched.start()
        sched.close()
        self.assertEqual((cpu.closed, gpu.closed), (1, 1))
        self.assertEqual(sched.publisher.subscriber_count(), 0)
        mailbox._thread.join(1.0)
        self.assertFalse(mailbox._thread.is_alive())

    def test_end_to_end_cpu_history(self):
        sched = Scheduler([Sampler(ScriptedAdapter(), cadence_s=1.0)], publisher=Publisher(), tick_s=1.0)
        sched.start()
        try:
            time.sleep(2.5)
            latest = sched.get_latest()
        finally:
            sched.stop()
        self.assertEqual(latest.cpu.data.usage, 42.0)
        self.assertGreaterEqual(len(latest.cpu.history), 2)
        self.assertLessEqual(len(latest.cpu.history), 3)

    def test_collect_once_and_status(self):
        samplers = [Sampler(ScriptedAdapter(domain=name), cadence_s=1.0, timeout_s=0.5) for name in DOMAINS]
        sched = Scheduler(samplers)
        composite = sched.collect_once()
        for name in DOMAINS:
            self.assertEqual(getattr(composite, name).data.usage, 42.0)
        status = sched.status()
        self.assertFalse(status["running"])
        self.assertEqual(status["samplers"]["npu"]["successes"], 1)
        self.assertEqual(status["samplers"]["cpu"]["state"], "Idle")


if __name__ == "__main__":
    unittest.main()
