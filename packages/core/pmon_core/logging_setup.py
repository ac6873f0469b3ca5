"""JSON-lines log files for the sampling engine, plus crash capture.

Every ``pmon.*`` logger writes one JSON object per line into a daily rotated
``pmon.log``. Engine code tags records with ``extra={"event": ...}`` so the
diagnostics bundle can be filtered by event name instead of message text.
"""

from __future__ import annotations

import faulthandler
import json
import logging
import logging.handlers
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType
from typing import Any, TextIO

from .config import config_root


ROOT_LOGGER = "pmon"
LOG_FILE = "pmon.log"

# Record attributes copied into the JSON line when a caller set them via ``extra``.
_EXTRA_FIELDS = ("event", "crash_id")

_fault_stream: TextIO | None = None


def log_dir() -> Path:
    path = config_root() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts_utc": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        line.update({key: getattr(record, key) for key in _EXTRA_FIELDS if hasattr(record, key)})
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=True, default=str)


def configure_logging(keep_files: int = 7, console: bool = True, directory: Path | None = None) -> logging.Logger:
    """Attach the rotating JSON file handler once; later calls are no-ops."""
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers:
        return root

    target = directory or log_dir()
    target.mkdir(parents=True, exist_ok=True)
    files = logging.handlers.TimedRotatingFileHandler(
        target / LOG_FILE,
        when="midnight",
        backupCount=max(2, keep_files),
        encoding="utf-8",
    )
    files.setFormatter(JsonFormatter())
    root.addHandler(files)
    if console:
        stderr = logging.StreamHandler()
        stderr.setFormatter(logging.Formatter("%(levelname)s %(name)s %(message)s"))
        root.addHandler(stderr)
    root.setLevel(logging.INFO)

    root.info("logging configured", extra={"event": "logging_configured"})
    return root


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


def _log_crash(
    event: str,
    where: str,
    exc_type: type[BaseException],
    exc: BaseException | None,
    tb: TracebackType | None,
) -> str:
    crash_id = uuid.uuid4().hex
    get_logger().critical(
        "%s crashed (crash_id=%s)",
        where,
        crash_id,
        exc_info=(exc_type, exc, tb),
        extra={"event": event, "crash_id": crash_id},
    )
    return crash_id


def install_crash_hooks(directory: Path | None = None) -> None:
    """Route uncaught exceptions into the log and dump native faults to ``fault.log``."""
    global _fault_stream

    def _main_hook(exc_type, exc, tb) -> None:
        _log_crash("uncaught_exception", "main thread", exc_type, exc, tb)

    def _thread_hook(args: threading.ExceptHookArgs) -> None:
        where = f"thread {args.thread.name}" if args.thread is not None else "thread"
        _log_crash("thread_exception", where, args.exc_type, args.exc_value, args.exc_traceback)

    sys.excepthook = _main_hook
    threading.excepthook = _thread_hook

    if _fault_stream is None:
        _fault_stream = ((directory or log_dir()) / "fault.log").open("a", encoding="utf-8")
    faulthandler.enable(file=_fault_stream, all_threads=True)
