"""Latest-value-wins delivery of composite snapshots to subscribers."""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable

from .models import CompositeSnapshot


_log = logging.getLogger("pmon.publisher")

Handler = Callable[[CompositeSnapshot], None]


class _Mailbox:
    """Single-slot mailbox drained by a dedicated thread.

    A newer snapshot overwrites an undelivered older one, so a slow handler
    only ever sees the most recent value.
    """

    def __init__(self, sub_id: int, handler: Handler) -> None:
        self.sub_id = sub_id
        self.handler = handler
        self._cond = threading.Condition()
        self._pending: CompositeSnapshot | None = None
        self._closed = False
        self.dropped = 0
        self._thread = threading.Thread(target=self._drain, name=f"pmon-subscriber-{sub_id}", daemon=True)
        self._thread.start()

    def offer(self, snapshot: CompositeSnapshot) -> None:
        with self._cond:
            if self._pending is not None:
                self.dropped += 1
            self._pending = snapshot
            self._cond.notify()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._pending = None
            self._cond.notify()

    def _drain(self) -> None:
        while True:
            with self._cond:
                while self._pending is None and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
                snapshot, self._pending = self._pending, None
            _deliver(self.sub_id, self.handler, snapshot)


def _deliver(sub_id: int, handler: Handler, snapshot: CompositeSnapshot) -> None:
    try:
        handler(snapshot)
    except Exception:
        _log.exception("subscriber %s raised", sub_id, extra={"event": "subscriber_error"})


class Publisher:
    """Subscriber registry and broadcaster.

    Synchronous subscribers run on the publishing thread; ``threaded=True``
    subscribers get a mailbox thread so they cannot stall the scheduler.
    Handler exceptions are logged and never propagate.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._handlers: dict[int, Handler] = {}
        self._mailboxes: dict[int, _Mailbox] = {}
        self._latest: CompositeSnapshot | None = None
        self.published = 0

    @property
    def latest(self) -> CompositeSnapshot | None:
        return self._latest

    def subscribe(self, handler: Handler, threaded: bool = False) -> int:
        with self._lock:
            sub_id = next(self._ids)
            if threaded:
                self._mailboxes[sub_id] = _Mailbox(sub_id, handler)
            else:
                self._handlers[sub_id] = handler
        _log.info("subscriber %s added", sub_id, extra={"event": "subscribe"})
        return sub_id

    def unsubscribe(self, sub_id: int) -> bool:
        with self._lock:
            handler = self._handlers.pop(sub_id, None)
            mailbox = self._mailboxes.pop(sub_id, None)
        if mailbox is not None:
            mailbox.close()
        removed = handler is not None or mailbox is not None
        if removed:
            _log.info("subscriber %s removed", sub_id, extra={"event": "unsubscribe"})
        return removed

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers) + len(self._mailboxes)

    def publish(self, snapshot: CompositeSnapshot) -> None:
        with self._lock:
            self._latest = snapshot
            self.published += 1
            handlers = list(self._handlers.items())
            mailboxes = list(self._mailboxes.values())

        for mailbox in mailboxes:
            mailbox.offer(snapshot)
        for sub_id, handler in handlers:
            _deliver(sub_id, handler, snapshot)

    def close(self) -> None:
        with self._lock:
            mailboxes = list(self._mailboxes.values())
            self._mailboxes.clear()
            self._handlers.clear()
        for mailbox in mailboxes:
            mailbox.close()
