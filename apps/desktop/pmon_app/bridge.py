"""Qt view-model that mirrors published snapshots onto the GUI thread."""

from __future__ import annotations

import json

from PySide6.QtCore import QObject, Property, Qt, Signal, Slot

from pmon_core import CompositeSnapshot, Publisher, format_bytes, format_rate, snapshot_to_dict
from pmon_core.models import DomainSnapshot


_STALE = " (stale)"


def _suffix(snap: DomainSnapshot) -> str:
    return _STALE if snap.stale else ""


def cpu_text(snap: DomainSnapshot | None) -> str:
    if snap is None or snap.data is None:
        return "CPU --"
    return f"CPU {snap.data.usage:05.1f}%{_suffix(snap)}"


def memory_text(snap: DomainSnapshot | None) -> str:
    if snap is None or snap.data is None:
        return "RAM --"
    return f"RAM {format_bytes(snap.data.used)} / {format_bytes(snap.data.total)}{_suffix(snap)}"


def gpu_text(snap: DomainSnapshot | None) -> str:
    if snap is None:
        return "GPU --"
    if not snap.available:
        return "GPU n/a"
    gpu = snap.data.primary
    if gpu is None or gpu.utilization is None:
        return f"GPU --{_suffix(snap)}"
    return f"GPU {gpu.utilization:05.1f}%{_suffix(snap)}"


def net_text(snap: DomainSnapshot | None) -> str:
    if snap is None or snap.data is None:
        return "NET --"
    return f"NET Up {format_rate(snap.rate('tx_bytes'))} Down {format_rate(snap.rate('rx_bytes'))}{_suffix(snap)}"


def disk_text(snap: DomainSnapshot | None) -> str:
    if snap is None or snap.data is None:
        return "DISK --"
    return f"DISK R {format_rate(snap.rate('read_bytes'))} W {format_rate(snap.rate('write_bytes'))}{_suffix(snap)}"


class SnapshotBridge(QObject):
    """Publisher subscriber for a Qt UI.

    ``publish`` runs on the scheduler thread; the queued ``_received`` signal
    hops the snapshot onto the thread that owns this object before any
    property changes are emitted.
    """

    snapshotChanged = Signal()
    _received = Signal(object)

    def __init__(self, publisher: Publisher, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._publisher = publisher
        self._snapshot: CompositeSnapshot | None = None
        self._texts = {
            "cpu": cpu_text(None),
            "memory": memory_text(None),
            "gpu": gpu_text(None),
            "network": net_text(None),
            "storage": disk_text(None),
        }
        self._received.connect(self._apply, Qt.ConnectionType.QueuedConnection)
        self._sub_id: int | None = publisher.subscribe(self._received.emit)

    def detach(self) -> None:
        if self._sub_id is not None:
            self._publisher.unsubscribe(self._sub_id)
            self._sub_id = None

    @Slot(object)
    def _apply(self, snap: CompositeSnapshot) -> None:
        self._snapshot = snap
        self._texts = {
            "cpu": cpu_text(snap.cpu),
            "memory": memory_text(snap.memory),
            "gpu": gpu_text(snap.gpu),
            "network": net_text(snap.network),
            "storage": disk_text(snap.storage),
        }
        self.snapshotChanged.emit()

    @Property(str, notify=snapshotChanged)
    def cpuText(self) -> str:
        return self._texts["cpu"]

    @Property(str, notify=snapshotChanged)
    def memoryText(self) -> str:
        return self._texts["memory"]

    @Property(str, notify=snapshotChanged)
    def gpuText(self) -> str:
        return self._texts["gpu"]

    @Property(str, notify=snapshotChanged)
    def netText(self) -> str:
        return self._texts["network"]

    @Property(str, notify=snapshotChanged)
    def diskText(self) -> str:
        return self._texts["storage"]

    @Property(str, notify=snapshotChanged)
    def snapshotJson(self) -> str:
        if self._snapshot is None:
            return "null"
        return json.dumps(snapshot_to_dict(self._snapshot), default=str)
