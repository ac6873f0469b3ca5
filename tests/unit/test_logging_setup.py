import faulthandler
import json
import logging
import sys
import tempfile
import threading
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))

from pmon_core import logging_setup
from pmon_core.logging_setup import JsonFormatter, configure_logging, get_logger, install_crash_hooks


class LoggingSetupTests(unittest.TestCase):
    def test_json_formatter_carries_event_and_thread(self):
        record = logging.LogRecord("pmon.sampler", logging.WARNING, __file__, 1, "gpu failed: %s", ("busy",), None)
        record.event = "sampler_transient"
        payload = json.loads(JsonFormatter().format(record))
        self.assertEqual(payload["msg"], "gpu failed: busy")
        self.assertEqual(payload["level"], "WARNING")
        self.assertEqual(payload["event"], "sampler_transient")
        self.assertIn("thread", payload)

    def test_configure_logging_writes_json_lines(self):
        logger = logging.getLogger("pmon")
        saved = list(logger.handlers)
        for handler in saved:
            logger.removeHandler(handler)
        try:
            with tempfile.TemporaryDirectory() as tmp:
                configure_logging(keep_files=3, console=False, directory=Path(tmp))
                get_logger("scheduler").info("tick", extra={"event": "tick"})
                for handler in logger.handlers:
                    handler.flush()
                lines = (Path(tmp) / "pmon.log").read_text(encoding="utf-8").splitlines()
                events = [json.loads(line).get("event") for line in lines]
                self.assertIn("logging_configured", events)
                self.assertIn("tick", events)
                for handler in list(logger.handlers):
                    handler.close()
                    logger.removeHandler(handler)
        finally:
            for handler in saved:
                logger.addHandler(handler)

    def test_crash_hooks_log_main_and_thread_exceptions_with_crash_id(self):
        saved_main, saved_thread = sys.excepthook, threading.excepthook
        saved_stream, fault_was_enabled = logging_setup._fault_stream, faulthandler.is_enabled()
        logging_setup._fault_stream = None
        try:
            with tempfile.TemporaryDirectory() as tmp:
                install_crash_hooks(directory=Path(tmp))
                self.assertTrue((Path(tmp) / "fault.log").exists())
                with self.assertLogs("pmon", level="CRITICAL") as captured:
                    try:
                        raise RuntimeError("boom")
                    except RuntimeError as exc:
                        sys.excepthook(type(exc), exc, exc.__traceback__)
                    worker = threading.Thread(target=lambda: 1 / 0, name="pmon-gpu-7")
                    worker.start()
                    worker.join()
                faulthandler.disable()
                logging_setup._fault_stream.close()
        finally:
            sys.excepthook, threading.excepthook = saved_main, saved_thread
            logging_setup._fault_stream = saved_stream
            if fault_was_enabled:
                faulthandler.enable()

        events = [record.event for record in captured.records]
        self.assertEqual(events, ["uncaught_exception", "thread_exception"])
        self.assertIn("pmon-gpu-7", captured.records[1].getMessage())
        crash_ids = {record.crash_id for record in captured.records}
        self.assertEqual(len(crash_ids), 2)
        self.assertTrue(all(record.exc_info for record in captured.records))


if __name__ == "__main__":
    unittest.main()
