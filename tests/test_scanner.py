"""Tests for the subnet scanner."""

from __future__ import annotations

import asyncio
import ipaddress
import time

import pytest

from nsm.discovery.scanner import DiscoveredHost, Scanner, ScanTarget
from nsm.errors import InvalidAddressError


def _iface(name: str, own: str, cidr: str):
    return (name, ipaddress.IPv4Address(own), ipaddress.IPv4Network(cidr))


async def _collect(scanner: Scanner, budget: float | None = None) -> list[DiscoveredHost]:
    return [found async for found in scanner.scan(budget)]


class TestTargets:
    def test_override_scans_its_24(self):
        scanner = Scanner(port=8080, override_ip="192.168.7.42")
        targets = scanner.target_networks()
        assert len(targets) == 1
        assert str(targets[0].network) == "192.168.7.0/24"
        candidates = Scanner.candidates(targets[0])
        assert len(candidates) == 253
        assert "192.168.7.42" not in candidates
        assert "192.168.7.0" not in candidates
        assert "192.168.7.255" not in candidates

    def test_invalid_override_rejected(self):
        with pytest.raises(InvalidAddressError):
            Scanner(port=8080, override_ip="192.168.7")

    def test_blank_override_uses_interfaces(self, monkeypatch):
        monkeypatch.setattr(
            "nsm.discovery.scanner._interface_networks",
            lambda: [_iface("eth0", "10.1.2.3", "10.1.2.0/24")],
        )
        targets = Scanner(port=8080, override_ip="  ").target_networks()
        assert [str(t.network) for t in targets] == ["10.1.2.0/24"]

    def test_large_subnet_clamped_to_own_24(self, monkeypatch):
        monkeypatch.setattr(
            "nsm.discovery.scanner._interface_networks",
            lambda: [_iface("eth0", "10.20.30.40", "10.0.0.0/8")],
        )
        targets = Scanner(port=8080).target_networks()
        assert [str(t.network) for t in targets] == ["10.20.30.0/24"]

    def test_23_is_not_clamped(self, monkeypatch):
        monkeypatch.setattr(
            "nsm.discovery.scanner._interface_networks",
            lambda: [_iface("eth0", "10.0.1.5", "10.0.0.0/23")],
        )
        targets = Scanner(port=8080, subnet_limit=256).target_networks()
        assert [str(t.network) for t in targets] == ["10.0.0.0/23"]

    def test_duplicate_subnets_scanned_once(self, monkeypatch):
        monkeypatch.setattr(
            "nsm.discovery.scanner._interface_networks",
            lambda: [
                _iface("eth0", "10.1.2.3", "10.1.2.0/24"),
                _iface("wlan0", "10.1.2.4", "10.1.2.0/24"),
            ],
        )
        assert len(Scanner(port=8080).target_networks()) == 1

    def test_candidates_exclude_own_address(self):
        target = ScanTarget(
            ipaddress.IPv4Network("10.0.0.0/30"), ipaddress.IPv4Address("10.0.0.1")
        )
        assert Scanner.candidates(target) == ["10.0.0.2"]


class TestScan:
    async def test_yields_live_addresses(self, monkeypatch):
        live = {"192.168.7.10", "192.168.7.20"}

        async def check(self, ip):
            return ip in live

        monkeypatch.setattr(Scanner, "_check_port", check)
        found = await _collect(Scanner(port=8080, override_ip="192.168.7.1", budget=5))
        assert {f.ip for f in found} == live
        assert all(f.port == 8080 for f in found)

    async def test_results_stream_before_scan_finishes(self, monkeypatch):
        async def check(self, ip):
            if ip == "192.168.7.2":
                return True
            await asyncio.sleep(0.5)
            return False

        monkeypatch.setattr(Scanner, "_check_port", check)
        scanner = Scanner(port=8080, override_ip="192.168.7.1", budget=5, concurrency=300)

        gen = scanner.scan()
        started = time.monotonic()
        first = await gen.__anext__()
        elapsed = time.monotonic() - started
        await gen.aclose()

        assert first.ip == "192.168.7.2"
        assert elapsed < 0.4

    async def test_budget_bounds_scan(self, monkeypatch):
        async def hang(self, ip):
            await asyncio.sleep(30)
            return True

        monkeypatch.setattr(Scanner, "_check_port", hang)
        started = time.monotonic()
        found = await _collect(Scanner(port=8080, override_ip="192.168.7.1"), budget=0.3)
        assert found == []
        assert time.monotonic() - started < 2.0

    async def test_concurrency_bound(self, monkeypatch):
        in_flight = 0
        peak = 0

        async def check(self, ip):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1
            return False

        monkeypatch.setattr(Scanner, "_check_port", check)
        await _collect(Scanner(port=8080, override_ip="192.168.7.1", budget=5, concurrency=8))
        assert 0 < peak <= 8

    async def test_concurrency_shared_across_subnets(self, monkeypatch):
        monkeypatch.setattr(
            "nsm.discovery.scanner._interface_networks",
            lambda: [
                _iface("eth0", "10.1.1.1", "10.1.1.0/28"),
                _iface("eth1", "10.2.2.1", "10.2.2.0/28"),
            ],
        )
        in_flight = 0
        peak = 0

        async def check(self, ip):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1
            return ip.endswith(".5")

        monkeypatch.setattr(Scanner, "_check_port", check)
        found = await _collect(Scanner(port=8080, budget=5, concurrency=4))
        assert peak <= 4
        assert {f.ip for f in found} == {"10.1.1.5", "10.2.2.5"}

    async def test_no_interfaces(self, monkeypatch):
        monkeypatch.setattr("nsm.discovery.scanner._interface_networks", lambda: [])
        assert await _collect(Scanner(port=8080, budget=1)) == []

    async def test_real_listener_found(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        scanner = Scanner(port=port, port_timeout=0.5)
        try:
            assert await scanner._check_port("127.0.0.1") is True
        finally:
            server.close()
            await server.wait_closed()
