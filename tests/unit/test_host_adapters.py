import sys
import unittest
from collections import namedtuple
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))

try:
    from pmon_core.config import AppConfig
    from pmon_telemetry import CpuAdapter, MemoryAdapter, StorageAdapter, build_samplers
    from pmon_telemetry.models import StorageReading
except Exception:  # pragma: no cover
    CpuAdapter = None

SDiskIO = namedtuple("SDiskIO", "read_count write_count read_bytes write_bytes read_time write_time")
SPart = namedtuple("SPart", "device mountpoint fstype opts")
SUsage = namedtuple("SUsage", "total used free percent")
SVmem = namedtuple("SVmem", "total available percent used free")
SSwap = namedtuple("SSwap", "total used free percent sin sout")


class HostAdapterTests(unittest.TestCase):
    def setUp(self):
        if CpuAdapter is None:
            self.skipTest("psutil not installed")

    def test_cpu_live_reading(self):
        reading = CpuAdapter().collect(1.0)
        self.assertGreaterEqual(reading.usage, 0.0)
        self.assertLessEqual(reading.usage, 100.0)
        self.assertGreaterEqual(reading.info.cores, 1)
        self.assertEqual(len(reading.cores), len(CpuAdapter().history_point(reading, {}).cores))

    def test_memory_percentages(self):
        gib = 1024**3
        with patch("psutil.virtual_memory", return_value=SVmem(16 * gib, 12 * gib, 25.0, 4 * gib, 8 * gib)), patch(
            "psutil.swap_memory", return_value=SSwap(0, 0, 0, 0.0, 0, 0)
        ):
            reading = MemoryAdapter(layout_reader=lambda t: ()).collect(1.0)
        self.assertEqual(reading.usage_percent, 25.0)
        self.assertIsNone(reading.active)
        self.assertEqual(reading.layout, ())
        self.assertEqual(reading.available_percent, 75.0)
        self.assertEqual(reading.formatted["total"], {"value": 16.0, "unit": "GB"})

    def test_storage_skips_pseudo_filesystems_and_maps_counters(self):
        parts = [
            SPart("/dev/nvme0n1p2", "/", "ext4", "rw"),
            SPart("tmpfs", "/run", "tmpfs", "rw"),
            SPart("/dev/nvme0n1p2", "/home", "ext4", "rw"),
        ]
        io = SDiskIO(10, 20, 4096, 8192, 1, 2)
        with patch("psutil.disk_partitions", return_value=parts), patch(
            "psutil.disk_usage", return_value=SUsage(1000, 250, 750, 25.0)
        ), patch(
            "psutil.disk_io_counters", side_effect=lambda perdisk=False: {"nvme0n1": io} if perdisk else io
        ):
            adapter = StorageAdapter(layout_reader=lambda t: (), block_reader=lambda parts: ())
            reading = adapter.collect(1.0)

        self.assertEqual([fs.mount for fs in reading.filesystems], ["/"])
        self.assertEqual(reading.filesystems[0].usage_percent, 25.0)
        counters = adapter.counters(reading)
        self.assertEqual(counters["read_bytes"], 4096)
        self.assertEqual(counters["write_count"], 20)
        self.assertEqual(counters["write_bytes:nvme0n1"], 8192)

        point = adapter.history_point(reading, {"read_bytes": 100.0, "write_count": 3.0})
        self.assertEqual((point.read_rate, point.write_iops, point.total_usage), (100.0, 3.0, 25.0))

    def test_storage_without_io_stats(self):
        reading = StorageReading(filesystems=(), io_total=None)
        self.assertEqual(StorageAdapter().counters(reading), {})
        self.assertEqual(reading.mean_usage_percent, 0.0)

    def test_samplers_follow_config_cadences(self):
        cfg = AppConfig()
        cfg.domains.cadence_ms["network"] = 2000
        samplers = {s.name: s for s in build_samplers(cfg, domains=["cpu", "storage", "network", "motherboard"])}
        self.assertEqual(samplers["cpu"].cadence_s, 1.0)
        self.assertAlmostEqual(samplers["cpu"].timeout_s, 0.8)
        self.assertEqual(samplers["storage"].cadence_s, 3.0)
        self.assertEqual(samplers["network"].cadence_s, 2.0)
        self.assertEqual(samplers["motherboard"].cadence_s, 30.0)
        self.assertEqual(samplers["motherboard"].adapter.cache_s, 10.0)


if __name__ == "__main__":
    unittest.main()
