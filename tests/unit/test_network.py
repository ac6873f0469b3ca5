import socket
import sys
import tempfile
import unittest
from collections import namedtuple
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))

try:
    from pmon_telemetry.models import Addressing, Connections, NetworkInterface, NetworkReading
    from pmon_telemetry.network import (
        MAX_CONNECTION_DETAILS,
        NetworkAdapter,
        _linux_default_route,
        interface_type,
        manufacturer_from_mac,
        parse_ip_route,
        parse_ipconfig,
        parse_resolv_conf,
        parse_route_get,
        parse_scutil_dns,
    )
    import psutil
except Exception:  # pragma: no cover
    NetworkAdapter = None


def _iface(name, rx, tx):
    return NetworkInterface(
        name=name,
        is_up=True,
        is_default=False,
        kind=interface_type(name),
        manufacturer="Unknown",
        mac=None,
        ip4=None,
        ip6=None,
        netmask=None,
        mtu=1500,
        speed_mbps=None,
        bytes_sent=tx,
        bytes_recv=rx,
        packets_sent=0,
        packets_recv=0,
        errin=0,
        errout=0,
        dropin=0,
        dropout=0,
    )


class NetworkTests(unittest.TestCase):
    def setUp(self):
        if NetworkAdapter is None:
            self.skipTest("psutil not installed")

    def test_interface_type_from_name(self):
        self.assertEqual(interface_type("lo").category, "loopback")
        self.assertEqual(interface_type("eth0").category, "ethernet")
        self.assertEqual(interface_type("enp3s0").category, "ethernet")
        self.assertEqual(interface_type("wlan0").category, "wifi")
        self.assertEqual(interface_type("docker0").category, "container")
        self.assertEqual(interface_type("veth12ab").category, "container")
        self.assertEqual(interface_type("virbr0").category, "bridge")
        self.assertEqual(interface_type("wg0").category, "vpn")
        self.assertEqual(interface_type("utun3").category, "vpn")
        self.assertEqual(interface_type("xyz", is_virtual=True).category, "virtual")
        self.assertEqual(interface_type("xyz").category, "unknown")

    def test_manufacturer_from_mac(self):
        self.assertEqual(manufacturer_from_mac("00:50:56:aa:bb:cc"), "VMware")
        self.assertEqual(manufacturer_from_mac("B8-27-EB-01-02-03"), "Raspberry Pi Foundation")
        self.assertEqual(manufacturer_from_mac("00:00:00:00:00:00"), "Unknown")
        self.assertEqual(manufacturer_from_mac(None), "Unknown")
        self.assertEqual(manufacturer_from_mac("aa:bb:cc:dd:ee:ff"), "Unknown")

    def test_parse_resolv_conf_skips_loopback_resolvers(self):
        text = "# generated\nnameserver 127.0.0.53\nnameserver 1.1.1.1\nsearch lan\nnameserver 8.8.8.8\nnameserver 9.9.9.9\n"
        self.assertEqual(parse_resolv_conf(text), ("1.1.1.1", "8.8.8.8"))

    def test_linux_default_route(self):
        table = (
            "Iface\tDestination\tGateway \tFlags\tRefCnt\tUse\tMetric\tMask\n"
            "eth0\t0000A8C0\t00000000\t0001\t0\t0\t100\t00FFFFFF\n"
            "eth0\t00000000\t0101A8C0\t0003\t0\t0\t100\t00000000\n"
        )
        with tempfile.TemporaryDirectory() as tmp:
            route = Path(tmp) / "route"
            route.write_text(table, encoding="utf-8")
            self.assertEqual(_linux_default_route(route), ("eth0", "192.168.1.1"))
            self.assertEqual(_linux_default_route(Path(tmp) / "missing"), (None, None))

    def test_counters_exclude_loopback_from_totals(self):
        reading = NetworkReading(
            interfaces=(_iface("lo", 1000, 1000), _iface("eth0", 300, 50), _iface("wlan0", 200, 25)),
            connections=Connections(active=2, total=5),
            addressing=Addressing(local_ip=None, gateway=None, subnet=None),
        )
        counters = NetworkAdapter().counters(reading)
        self.assertEqual(counters["rx_bytes"], 500)
        self.assertEqual(counters["tx_bytes"], 75)
        self.assertEqual(counters["rx_bytes:lo"], 1000)
        self.assertEqual(counters["tx_bytes:eth0"], 50)

        point = NetworkAdapter().history_point(reading, {"rx_bytes": 10.0, "tx_bytes": 2.0})
        self.assertEqual((point.rx_rate, point.tx_rate, point.connections), (10.0, 2.0, 2))

    def test_parse_ip_route(self):
        text = "default via 192.168.1.1 dev wlp2s0 proto dhcp src 192.168.1.40 metric 600\n"
        self.assertEqual(parse_ip_route(text), ("192.168.1.1", "wlp2s0"))
        self.assertEqual(parse_ip_route(""), (None, None))

    def test_parse_route_get_and_scutil(self):
        route = "   route to: default\ndestination: default\n       mask: default\n    gateway: 10.0.0.1\n  interface: en0\n"
        self.assertEqual(parse_route_get(route), ("10.0.0.1", "en0"))
        scutil = (
            "DNS configuration\n\nresolver #1\n  nameserver[0] : 10.0.0.1\n  nameserver[1] : 1.1.1.1\n"
            "\nresolver #2\n  nameserver[0] : 10.0.0.1\n  nameserver[1] : 127.0.0.1\n"
        )
        self.assertEqual(parse_scutil_dns(scutil), ("10.0.0.1", "1.1.1.1"))

    def test_parse_ipconfig_picks_adapter_with_gateway(self):
        text = "\r\n".join(
            [
                "Windows IP Configuration",
                "",
                "   Host Name . . . . . . . . . . . . : DESKTOP-1",
                "",
                "Ethernet adapter vEthernet (WSL):",
                "",
                "   IPv4 Address. . . . . . . . . . . : 172.28.16.1(Preferred)",
                "   Subnet Mask . . . . . . . . . . . : 255.255.240.0",
                "   Default Gateway . . . . . . . . . :",
                "",
                "Wireless LAN adapter Wi-Fi:",
                "",
                "   Autoconfiguration IPv4 Address. . : 169.254.10.2",
                "   IPv4 Address. . . . . . . . . . . : 192.168.1.23(Preferred)",
                "   Subnet Mask . . . . . . . . . . . : 255.255.255.0",
                "   Lease Obtained. . . . . . . . . . : Saturday, October 17, 2026 9:02:11 AM",
                "   Default Gateway . . . . . . . . . : fe80::1%12",
                "                                       192.168.1.1",
                "   DNS Servers . . . . . . . . . . . : 192.168.1.1",
                "                                       8.8.8.8",
                "                                       8.8.4.4",
            ]
        )
        addressing = parse_ipconfig(text)
        self.assertEqual(addressing.local_ip, "192.168.1.23")
        self.assertEqual(addressing.gateway, "192.168.1.1")
        self.assertEqual(addressing.subnet, "255.255.255.0")
        self.assertEqual(addressing.dns, ("192.168.1.1", "8.8.8.8"))

    def test_fallback_fills_only_missing_fields_and_is_cached(self):
        now = [0.0]
        calls = []

        def fallback(timeout_s):
            calls.append(timeout_s)
            return Addressing(local_ip="10.9.9.9", gateway="10.0.0.1", subnet=None, dns=("10.0.0.53",))

        adapter = NetworkAdapter(addressing_fallback=fallback, clock=lambda: now[0], fallback_ttl_s=30.0)
        partial = Addressing(local_ip="192.168.1.23", gateway=None, subnet="255.255.255.0")
        filled = adapter._addressing(partial, 1.0)
        self.assertEqual(filled, Addressing("192.168.1.23", "10.0.0.1", "255.255.255.0", ("10.0.0.53",)))

        now[0] = 29.0
        adapter._addressing(partial, 1.0)
        self.assertEqual(len(calls), 1)
        now[0] = 31.0
        adapter._addressing(partial, 1.0)
        self.assertEqual(len(calls), 2)

        complete = Addressing("192.168.1.23", "192.168.1.1", "255.255.255.0", ("1.1.1.1",))
        self.assertIs(adapter._addressing(complete, 1.0), complete)
        self.assertEqual(len(calls), 2)

    def test_connection_details_for_established_and_listening(self):
        addr = namedtuple("addr", "ip port")
        sconn = namedtuple("sconn", "fd family type laddr raddr status pid")
        conns = [
            sconn(3, socket.AF_INET, socket.SOCK_STREAM, addr("192.168.1.23", 51514), addr("140.82.112.3", 443), "ESTABLISHED", 4242),
            sconn(4, socket.AF_INET6, socket.SOCK_STREAM, addr("::", 22), (), "LISTEN", None),
            sconn(5, socket.AF_INET, socket.SOCK_STREAM, addr("192.168.1.23", 51600), addr("1.1.1.1", 443), "TIME_WAIT", None),
        ]
        extra = [conns[0]] * (MAX_CONNECTION_DETAILS + 10)

        class FakeProcess:
            def __init__(self, pid):
                self.pid = pid

            def name(self):
                return "firefox"

        with patch("psutil.net_connections", return_value=conns), patch("psutil.Process", FakeProcess):
            connections = NetworkAdapter()._connections()
        self.assertEqual((connections.active, connections.total), (2, 3))
        self.assertEqual(len(connections.details), 2)
        web, ssh = connections.details
        self.assertEqual((web.protocol, web.peer_address, web.peer_port, web.process), ("tcp", "140.82.112.3", 443, "firefox"))
        self.assertEqual((ssh.protocol, ssh.local_port, ssh.peer_address, ssh.peer_port), ("tcp6", 22, "", None))
        self.assertEqual(ssh.process, "")

        def denied(pid):
            raise psutil.AccessDenied(pid)

        with patch("psutil.net_connections", return_value=extra), patch("psutil.Process", side_effect=denied):
            capped = NetworkAdapter()._connections()
        self.assertEqual(capped.active, MAX_CONNECTION_DETAILS + 10)
        self.assertEqual(len(capped.details), MAX_CONNECTION_DETAILS)
        self.assertEqual(capped.details[0].process, "")

    def test_live_collect(self):
        reading = NetworkAdapter().collect(1.0)
        self.assertGreaterEqual(len(reading.interfaces), 1)
        self.assertGreaterEqual(reading.connections.total, 0)


if __name__ == "__main__":
    unittest.main()
