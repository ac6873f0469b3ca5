import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))

from pmon_core.sampler import Sampler
from pmon_core.sources import SourceTransient, SourceUnavailable
from pmon_telemetry.models import NpuDevice
from pmon_telemetry.npu import NpuAdapter, _linux_accel, parse_lspci

LSPCI = """\
00:02.0 VGA compatible controller: Intel Corporation Meteor Lake-P [Intel Arc Graphics] (rev 08)
00:0b.0 Processing accelerators: Intel Corporation Meteor Lake NPU (rev 04)
c4:00.1 Signal processing controller: Advanced Micro Devices, Inc. [AMD] XDNA Neural Processing Unit
"""


class NpuTests(unittest.TestCase):
    def test_parse_lspci(self):
        devices = parse_lspci(LSPCI)
        self.assertEqual(len(devices), 2)
        self.assertEqual(devices[0].vendor, "intel")
        self.assertIn("NPU", devices[0].name)
        self.assertEqual(devices[1].vendor, "amd")
        self.assertFalse(devices[1].metrics_available)

    def test_linux_accel_nodes(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "accel0").mkdir()
            devices = _linux_accel(root)
            self.assertEqual([d.name for d in devices], ["accel0"])
            self.assertEqual(_linux_accel(root / "missing"), [])

    def test_no_npu_is_unavailable(self):
        adapter = NpuAdapter(detector=lambda timeout_s: ())
        with self.assertRaises(SourceUnavailable):
            adapter.collect(1.0)

    def test_present_without_metrics(self):
        calls = []

        def detector(timeout_s):
            calls.append(timeout_s)
            return (NpuDevice(vendor="intel", name="Intel AI Boost"),)

        adapter = NpuAdapter(detector=detector)
        reading = adapter.collect(1.0)
        adapter.collect(1.0)
        self.assertEqual(len(calls), 1)
        self.assertFalse(reading.metrics_available)
        self.assertIsNone(adapter.history_point(reading, {}))

    def test_detection_timeout_is_transient(self):
        def detector(timeout_s):
            raise subprocess.TimeoutExpired(cmd="lspci", timeout=timeout_s)

        with self.assertRaises(SourceTransient):
            NpuAdapter(detector=detector).collect(0.1)

    def test_sampler_keeps_present_and_unavailable_apart(self):
        present = Sampler(
            NpuAdapter(detector=lambda t: (NpuDevice(vendor="amd", name="XDNA"),)), cadence_s=1.0, timeout_s=0.5
        )
        absent = Sampler(NpuAdapter(detector=lambda t: ()), cadence_s=1.0, timeout_s=0.5)

        snap = present.collect_now()
        self.assertTrue(snap.available)
        self.assertEqual(snap.data.devices[0].name, "XDNA")
        self.assertEqual(len(snap.history), 0)

        with self.assertLogs("pmon.sampler", level="INFO"):
            snap = absent.collect_now()
        self.assertFalse(snap.available)
        self.assertIsNone(snap.error)
        self.assertTrue(absent.unavailable)


if __name__ == "__main__":
    unittest.main()
