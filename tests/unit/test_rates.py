import random
import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))

from pmon_core.rates import RateTracker


class RateTrackerTests(unittest.TestCase):
    def test_first_sample_is_zero(self):
        for t0 in (0.0, 12.5, 1e9):
            tracker = RateTracker()
            self.assertEqual(tracker.observe("k", 100, t0).rate_per_second, 0.0)

    def test_rate_over_interval(self):
        tracker = RateTracker()
        tracker.observe("x", 1000, 10.0)
        result = tracker.observe("x", 1500, 12.0)
        self.assertAlmostEqual(result.rate_per_second, 250.0)

    def test_counter_reset_clamps_to_zero_and_rebaselines(self):
        tracker = RateTracker()
        tracker.observe("eth0", 5000, 1.0)
        self.assertEqual(tracker.observe("eth0", 200, 2.0).rate_per_second, 0.0)
        # The reset value became the new baseline.
        self.assertAlmostEqual(tracker.observe("eth0", 600, 3.0).rate_per_second, 400.0)

    def test_non_advancing_clock_returns_zero_and_self_heals(self):
        tracker = RateTracker()
        tracker.observe("d", 100, 5.0)
        self.assertEqual(tracker.observe("d", 300, 5.0).rate_per_second, 0.0)
        self.assertEqual(tracker.observe("d", 400, 4.0).rate_per_second, 0.0)
        self.assertAlmostEqual(tracker.observe("d", 500, 5.0).rate_per_second, 100.0)

    def test_streams_are_independent(self):
        tracker = RateTracker()
        tracker.observe("rx", 0, 0.0)
        tracker.observe("tx", 0, 0.0)
        self.assertAlmostEqual(tracker.observe("rx", 100, 1.0).rate_per_second, 100.0)
        self.assertAlmostEqual(tracker.observe("tx", 900, 1.0).rate_per_second, 900.0)
        self.assertEqual(tracker.streams(), ["rx", "tx"])

    def test_rates_never_negative_for_random_sequences(self):
        rng = random.Random(7)
        tracker = RateTracker()
        for _ in range(500):
            value = rng.randint(0, 10_000)
            ts = rng.uniform(0, 100)
            self.assertGreaterEqual(tracker.observe("r", value, ts).rate_per_second, 0.0)

    def test_observe_many_and_forget(self):
        tracker = RateTracker()
        tracker.observe_many({"a": 10, "b": 20}, 1.0)
        rates = tracker.observe_many({"a": 30, "b": 20}, 3.0)
        self.assertEqual(rates, {"a": 10.0, "b": 0.0})
        tracker.forget("a")
        self.assertEqual(tracker.observe("a", 1000, 4.0).rate_per_second, 0.0)


if __name__ == "__main__":
    unittest.main()
