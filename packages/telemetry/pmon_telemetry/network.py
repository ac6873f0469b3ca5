"""Network interfaces, throughput counters, connections, and addressing."""

from __future__ import annotations

import logging
import re
import socket
import struct
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable

import psutil

from pmon_core.sources import SourceAdapter, SourceTransient

from ._shell import run_text
from .models import (
    Addressing,
    ConnectionDetail,
    Connections,
    InterfaceType,
    NetworkInterface,
    NetworkPoint,
    NetworkReading,
)


_log = logging.getLogger("pmon.telemetry.network")

_IPV4_RE = re.compile(r"\b(\d{1,3}(?:\.\d{1,3}){3})\b")

# Connection details beyond this many are counted but not listed.
MAX_CONNECTION_DETAILS = 256

# Gateway and DNS lookups shell out, so their answers are reused for this long.
FALLBACK_TTL_S = 30.0

# Subset of the IEEE OUI registry covering common NICs and hypervisors.
OUI_VENDORS = {
    "00-50-56": "VMware",
    "00-0C-29": "VMware",
    "00-05-69": "VMware",
    "00-1C-14": "VMware",
    "08-00-27": "Oracle VirtualBox",
    "00-15-5D": "Microsoft Hyper-V",
    "00-16-3E": "Xen VirtualPlatform",
    "52-54-00": "QEMU/KVM",
    "02-42-AC": "Docker",
    "00-E0-81": "Tyan Computer",
    "00-50-B6": "Cisco",
    "00-1B-21": "Intel",
    "00-90-27": "Intel",
    "00-A0-C9": "Intel",
    "00-03-47": "Intel",
    "00-12-3F": "Intel",
    "00-15-17": "Intel",
    "00-16-76": "Intel",
    "00-19-D1": "Intel",
    "00-1E-67": "Intel",
    "00-21-70": "Intel",
    "00-24-D7": "Intel",
    "00-26-B9": "Intel",
    "28-D2-44": "Intel",
    "3C-97-0E": "Intel",
    "40-A8-F0": "Intel",
    "7C-7A-91": "Intel",
    "8C-89-A5": "Intel",
    "AC-22-0B": "Intel",
    "B4-96-91": "Intel",
    "E4-A7-A0": "Intel",
    "E8-39-35": "Intel",
    "F0-DE-F1": "Intel",
    "F4-CE-46": "Intel",
    "00-D0-B7": "Realtek",
    "00-E0-4C": "Realtek",
    "00-C0-9F": "Qualcomm Atheros",
    "04-CE-14": "Qualcomm Atheros",
    "20-F4-78": "Qualcomm Atheros",
    "00-22-FB": "Broadcom",
    "00-10-18": "Broadcom",
    "00-14-A5": "Broadcom",
    "00-1A-A0": "Broadcom",
    "00-21-D8": "Broadcom",
    "B8-27-EB": "Raspberry Pi Foundation",
    "DC-A6-32": "Raspberry Pi Foundation",
    "E4-5F-01": "Raspberry Pi Foundation",
}

_TYPES = {
    "loopback": InterfaceType("loopback", "Loopback", "Loopback interface"),
    "ethernet": InterfaceType("ethernet", "Ethernet", "Wired Ethernet connection"),
    "wifi": InterfaceType("wifi", "WiFi", "Wireless network connection"),
    "bluetooth": InterfaceType("bluetooth", "Bluetooth", "Bluetooth network connection"),
    "vpn": InterfaceType("vpn", "VPN", "VPN tunnel interface"),
    "container": InterfaceType("container", "Container", "Container network interface"),
    "vm": InterfaceType("vm", "Virtual Machine", "Virtual machine interface"),
    "bridge": InterfaceType("bridge", "Bridge", "Network bridge interface"),
    "cellular": InterfaceType("cellular", "Cellular", "Mobile/Cellular connection"),
    "virtual": InterfaceType("virtual", "Virtual", "Virtual or internal interface"),
    "unknown": InterfaceType("unknown", "Unknown", "Unknown interface type"),
}

# Checked in order; the first matching rule wins.
_NAME_RULES = (
    ("loopback", ("loopback",), ("lo",)),
    ("container", ("docker", "br-"), ("veth", "cni", "flannel")),
    ("vm", ("vbox", "vmware", "hyperv", "vmnet"), ("vm",)),
    ("bridge", ("bridge",), ("virbr", "br")),
    ("vpn", ("vpn", "tun", "tap", "l2tp", "pptp", "wireguard"), ("ppp", "wg", "utun")),
    ("wifi", ("wi-fi", "wireless", "wifi", "wlan"), ("wl", "ath", "ra")),
    ("bluetooth", ("bluetooth",), ("bt", "bnep")),
    ("cellular", ("cellular", "mobile", "lte"), ("wwan", "rmnet")),
    ("ethernet", ("ethernet",), ("eth", "en", "em")),
)


def manufacturer_from_mac(mac: str | None) -> str:
    if not mac or mac.replace(":", "").replace("-", "").strip("0") == "":
        return "Unknown"
    oui = mac[:8].upper().replace(":", "-")
    return OUI_VENDORS.get(oui, "Unknown")


def interface_type(name: str, is_virtual: bool = False) -> InterfaceType:
    lowered = name.lower()
    for category, contains, prefixes in _NAME_RULES:
        if any(token in lowered for token in contains) or lowered.startswith(prefixes):
            return _TYPES[category]
    if is_virtual:
        return _TYPES["virtual"]
    return _TYPES["unknown"]


def _is_virtual(name: str) -> bool:
    if not sys.platform.startswith("linux"):
        return False
    return Path("/sys/devices/virtual/net", name).exists()


def _linux_default_route(route_file: Path = Path("/proc/net/route")) -> tuple[str | None, str | None]:
    try:
        lines = route_file.read_text(encoding="utf-8").splitlines()[1:]
    except OSError:
        return None, None
    for line in lines:
        fields = line.split()
        if len(fields) < 3 or fields[1] != "00000000":
            continue
        try:
            gateway = socket.inet_ntoa(struct.pack("<L", int(fields[2], 16)))
        except (ValueError, struct.error):
            gateway = None
        return fields[0], gateway
    return None, None


def parse_resolv_conf(text: str, limit: int = 2) -> tuple[str, ...]:
    servers = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] == "nameserver" and not parts[1].startswith("127."):
            servers.append(parts[1])
    return tuple(servers[:limit])


def _dns_servers() -> tuple[str, ...]:
    resolv = Path("/etc/resolv.conf")
    try:
        return parse_resolv_conf(resolv.read_text(encoding="utf-8"))
    except OSError:
        return ()


def _ipv4s(text: str) -> list[str]:
    return _IPV4_RE.findall(text)


def parse_ip_route(text: str) -> tuple[str | None, str | None]:
    """Gateway and device from ``ip route show default``."""
    match = re.search(r"default via (\S+)(?:.*?\bdev (\S+))?", text)
    if match is None:
        return None, None
    return match.group(1), match.group(2)


def parse_route_get(text: str) -> tuple[str | None, str | None]:
    """Gateway and interface from macOS ``route -n get default``."""
    fields = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip()] = value.strip()
    return fields.get("gateway") or None, fields.get("interface") or None


def parse_scutil_dns(text: str, limit: int = 2) -> tuple[str, ...]:
    servers: list[str] = []
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        value = value.strip()
        if sep and key.strip().startswith("nameserver[") and not value.startswith("127.") and value not in servers:
            servers.append(value)
    return tuple(servers[:limit])


def parse_ipconfig(text: str, limit: int = 2) -> Addressing:
    """Pick the adapter holding the default gateway out of ``ipconfig /all``."""
    adapters: list[dict[str, list[str]]] = []
    current: dict[str, list[str]] | None = None
    key = ""
    for raw in text.splitlines():
        if not raw.strip():
            continue
        if not raw[0].isspace():
            # "Ethernet adapter Ethernet:" starts a new section.
            current = {}
            adapters.append(current)
            key = ""
            continue
        if current is None:
            continue
        line = raw.strip()
        if " : " in line:
            key, value = line.split(" : ", 1)
            key = key.rstrip(" .")
        else:
            value = line
        current.setdefault(key, []).extend(_ipv4s(value))

    def _first(adapter, *names):
        for name in names:
            for ip in adapter.get(name, ()):
                if not ip.startswith("169.254."):
                    return ip
        return None

    chosen = next((a for a in adapters if _first(a, "Default Gateway")), None) or next(
        (a for a in adapters if _first(a, "IPv4 Address", "IP Address")), {}
    )
    dns = chosen.get("DNS Servers") or next((a["DNS Servers"] for a in adapters if a.get("DNS Servers")), [])
    return Addressing(
        local_ip=_first(chosen, "IPv4 Address", "IP Address"),
        gateway=_first(chosen, "Default Gateway"),
        subnet=_first(chosen, "Subnet Mask"),
        dns=tuple(dns[:limit]),
    )


def system_addressing(timeout_s: float) -> Addressing:
    """Ask the platform's own tools when interface data leaves gaps."""
    if sys.platform == "win32":
        return parse_ipconfig(run_text(["ipconfig", "/all"], timeout_s))
    if sys.platform == "darwin":
        gateway, _ = parse_route_get(run_text(["route", "-n", "get", "default"], timeout_s))
        dns = _dns_servers() or parse_scutil_dns(run_text(["scutil", "--dns"], timeout_s))
        return Addressing(local_ip=None, gateway=gateway, subnet=None, dns=dns)
    gateway, _ = parse_ip_route(run_text(["ip", "route", "show", "default"], timeout_s))
    return Addressing(local_ip=None, gateway=gateway, subnet=None, dns=_dns_servers())


def fill_addressing(primary: Addressing, fallback: Addressing) -> Addressing:
    return Addressing(
        local_ip=primary.local_ip or fallback.local_ip,
        gateway=primary.gateway or fallback.gateway,
        subnet=primary.subnet or fallback.subnet,
        dns=primary.dns or fallback.dns,
    )


def _detail(conn, names: dict[int, str]) -> ConnectionDetail:
    pid = conn.pid
    if pid is not None and pid not in names:
        try:
            names[pid] = psutil.Process(pid).name()
        except psutil.Error:
            names[pid] = ""
    laddr, raddr = conn.laddr, conn.raddr
    return ConnectionDetail(
        protocol=(
            ("tcp" if conn.type == socket.SOCK_STREAM else "udp") + ("6" if conn.family == socket.AF_INET6 else "")
        ),
        local_address=(laddr.ip if laddr else ""),
        local_port=(laddr.port if laddr else None),
        peer_address=(raddr.ip if raddr else ""),
        peer_port=(raddr.port if raddr else None),
        state=conn.status,
        pid=pid,
        process=(names.get(pid, "") if pid is not None else ""),
    )


class NetworkAdapter(SourceAdapter):
    """psutil interface data, topped up by OS tools when gateway or DNS is missing."""

    domain = "network"

    def __init__(
        self,
        addressing_fallback: Callable[[float], Addressing] = system_addressing,
        clock: Callable[[], float] = time.monotonic,
        fallback_ttl_s: float = FALLBACK_TTL_S,
    ) -> None:
        self._linux = sys.platform.startswith("linux")
        self._fallback = addressing_fallback
        self._clock = clock
        self.fallback_ttl_s = float(fallback_ttl_s)
        self._fallback_value: Addressing | None = None
        self._fallback_at: float | None = None

    def _connections(self) -> Connections:
        try:
            conns = psutil.net_connections(kind="inet")
        except (psutil.AccessDenied, PermissionError, OSError):
            # macOS requires root for the system-wide table.
            return Connections(active=0, total=0)
        by_state: dict[str, int] = {}
        details = []
        names: dict[int, str] = {}
        for conn in conns:
            by_state[conn.status] = by_state.get(conn.status, 0) + 1
            if conn.status in (psutil.CONN_ESTABLISHED, psutil.CONN_LISTEN) and len(details) < MAX_CONNECTION_DETAILS:
                details.append(_detail(conn, names))
        active = by_state.get(psutil.CONN_ESTABLISHED, 0) + by_state.get(psutil.CONN_LISTEN, 0)
        return Connections(active=active, total=len(conns), by_state=by_state, details=tuple(details))

    def _system_addressing(self, timeout_s: float) -> Addressing:
        now = self._clock()
        fresh = self._fallback_at is not None and now - self._fallback_at < self.fallback_ttl_s
        if self._fallback_value is not None and fresh:
            return self._fallback_value
        try:
            value = self._fallback(timeout_s)
        except (OSError, ValueError, subprocess.TimeoutExpired) as exc:
            _log.debug("addressing fallback failed: %s", exc)
            value = Addressing(local_ip=None, gateway=None, subnet=None)
        self._fallback_value = value
        self._fallback_at = now
        return value

    def _addressing(self, primary: Addressing, timeout_s: float) -> Addressing:
        if primary.local_ip and primary.gateway and primary.dns:
            return primary
        return fill_addressing(primary, self._system_addressing(timeout_s))

    def collect(self, timeout_s: float) -> NetworkReading:
        try:
            io = psutil.net_io_counters(pernic=True)
            addrs = psutil.net_if_addrs()
            stats = psutil.net_if_stats()
        except OSError as exc:
            raise SourceTransient(f"interface query failed: {exc}") from exc

        default_iface, gateway = _linux_default_route() if self._linux else (None, None)

        interfaces = []
        for name, counters in sorted(io.items()):
            mac = ip4 = ip6 = netmask = None
            for addr in addrs.get(name, ()):
                if addr.family == psutil.AF_LINK:
                    mac = addr.address
                elif addr.family == socket.AF_INET and ip4 is None:
                    ip4, netmask = addr.address, addr.netmask
                elif addr.family == socket.AF_INET6 and ip6 is None:
                    ip6 = addr.address.split("%", 1)[0]
            st = stats.get(name)
            interfaces.append(
                NetworkInterface(
                    name=name,
                    is_up=bool(st.isup) if st else False,
                    is_default=(name == default_iface),
                    kind=interface_type(name, _is_virtual(name)),
                    manufacturer=manufacturer_from_mac(mac),
                    mac=mac,
                    ip4=ip4,
                    ip6=ip6,
                    netmask=netmask,
                    mtu=(st.mtu if st else None),
                    speed_mbps=(st.speed if st and st.speed else None),
                    bytes_sent=int(counters.bytes_sent),
                    bytes_recv=int(counters.bytes_recv),
                    packets_sent=int(counters.packets_sent),
                    packets_recv=int(counters.packets_recv),
                    errin=int(counters.errin),
                    errout=int(counters.errout),
                    dropin=int(counters.dropin),
                    dropout=int(counters.dropout),
                )
            )

        primary = next((i for i in interfaces if i.is_default), None) or next(
            (i for i in interfaces if i.is_up and i.ip4 and i.kind.category != "loopback"), None
        )
        addressing = Addressing(
            local_ip=(primary.ip4 if primary else None),
            gateway=gateway,
            subnet=(primary.netmask if primary else None),
            dns=(_dns_servers() if self._linux else ()),
        )
        return NetworkReading(
            interfaces=tuple(interfaces),
            connections=self._connections(),
            addressing=self._addressing(addressing, timeout_s),
        )

    def counters(self, reading: NetworkReading) -> dict[str, int]:
        out: dict[str, int] = {"rx_bytes": 0, "tx_bytes": 0}
        for iface in reading.interfaces:
            out[f"rx_bytes:{iface.name}"] = iface.bytes_recv
            out[f"tx_bytes:{iface.name}"] = iface.bytes_sent
            if iface.kind.category != "loopback":
                out["rx_bytes"] += iface.bytes_recv
                out["tx_bytes"] += iface.bytes_sent
        return out

    def history_point(self, reading: NetworkReading, rates: dict[str, float]) -> NetworkPoint:
        return NetworkPoint(
            rx_rate=rates.get("rx_bytes", 0.0),
            tx_rate=rates.get("tx_bytes", 0.0),
            connections=reading.connections.active,
        )
