"""Subnet scanner for peer nsm instances.

Enumerates the local IPv4 subnets (or a /24 around an override address) and
TCP-probes every candidate address on the nsm port. Addresses that accept a
connection are yielded as they are found, while the rest of the scan keeps
running.

Bounds:
  - at most ``concurrency`` dials in flight across all subnets
  - ``port_timeout`` per dial
  - ``budget`` seconds for the whole scan; on expiry in-flight dials are
    cancelled and the iterator ends

Usage::

    scanner = Scanner(port=8080)
    async for found in scanner.scan():
        print(found.ip)
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import AsyncIterator

import psutil

from nsm.errors import InvalidAddressError

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 50
DEFAULT_PORT_TIMEOUT = 0.5
DEFAULT_BUDGET = 30.0
DEFAULT_SUBNET_LIMIT = 512
# Subnets wider than this prefix (and larger than the limit) shrink to the local /24.
CLAMP_PREFIX = 23

_DONE = object()


@dataclass(frozen=True)
class DiscoveredHost:
    """An address that accepted a connection on the scanned port."""

    ip: str
    port: int


@dataclass(frozen=True)
class ScanTarget:
    network: ipaddress.IPv4Network
    own_ip: ipaddress.IPv4Address
    interface: str = ""


class Scanner:
    """Concurrent TCP sweep of local subnets."""

    def __init__(
        self,
        port: int,
        override_ip: str | None = None,
        budget: float = DEFAULT_BUDGET,
        concurrency: int = DEFAULT_CONCURRENCY,
        port_timeout: float = DEFAULT_PORT_TIMEOUT,
        subnet_limit: int = DEFAULT_SUBNET_LIMIT,
    ) -> None:
        override_ip = (override_ip or "").strip()
        if override_ip:
            try:
                ipaddress.IPv4Address(override_ip)
            except ValueError as exc:
                raise InvalidAddressError(override_ip, "override_ip") from exc
        self.port = port
        self.override_ip = override_ip
        self.budget = budget
        self.concurrency = max(1, concurrency)
        self.port_timeout = port_timeout
        self.subnet_limit = subnet_limit

    # ── Targets ────────────────────────────────────────────────────

    def target_networks(self) -> list[ScanTarget]:
        """Subnets to sweep, already clamped."""
        if self.override_ip:
            own = ipaddress.IPv4Address(self.override_ip)
            network = ipaddress.IPv4Network(f"{own}/24", strict=False)
            logger.info("Scanning override subnet %s", network)
            return [ScanTarget(network, own, "override")]

        targets: list[ScanTarget] = []
        seen: set[ipaddress.IPv4Network] = set()
        for name, own, network in _interface_networks():
            network = self._clamp(network, own)
            if network in seen:
                continue
            seen.add(network)
            logger.info("Scanning subnet %s on interface %s", network, name)
            targets.append(ScanTarget(network, own, name))
        return targets

    def _clamp(
        self, network: ipaddress.IPv4Network, own: ipaddress.IPv4Address
    ) -> ipaddress.IPv4Network:
        if network.num_addresses > self.subnet_limit and network.prefixlen < CLAMP_PREFIX:
            clamped = ipaddress.IPv4Network(f"{own}/24", strict=False)
            logger.debug("Subnet %s too large, scanning %s instead", network, clamped)
            return clamped
        return network

    @staticmethod
    def candidates(target: ScanTarget) -> list[str]:
        """Every host address in the subnet except our own."""
        return [str(ip) for ip in target.network.hosts() if ip != target.own_ip]

    # ── Scan ───────────────────────────────────────────────────────

    async def scan(self, budget: float | None = None) -> AsyncIterator[DiscoveredHost]:
        """Yield live peers as they are found until done or out of time."""
        budget = self.budget if budget is None else budget
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget

        targets = self.target_networks()
        if not targets:
            logger.warning("No scannable IPv4 interfaces found")
            return

        queue: asyncio.Queue = asyncio.Queue()
        sem = asyncio.Semaphore(self.concurrency)
        workers = [
            asyncio.create_task(self._scan_subnet(t, sem, queue)) for t in targets
        ]

        async def _close_when_done() -> None:
            await asyncio.gather(*workers, return_exceptions=True)
            queue.put_nowait(_DONE)

        closer = asyncio.create_task(_close_when_done())
        emitted: set[str] = set()
        found = 0
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.info("Scan budget of %.1fs exhausted", budget)
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    logger.info("Scan budget of %.1fs exhausted", budget)
                    break
                if item is _DONE:
                    break
                if item.ip in emitted:
                    continue
                emitted.add(item.ip)
                found += 1
                yield item
        finally:
            for task in (*workers, closer):
                task.cancel()
            await asyncio.gather(*workers, closer, return_exceptions=True)
            logger.info("Scan finished: %d peer(s) found", found)

    async def _scan_subnet(
        self, target: ScanTarget, sem: asyncio.Semaphore, queue: asyncio.Queue
    ) -> None:
        probes: list[asyncio.Task] = []
        try:
            for ip in self.candidates(target):
                await sem.acquire()
                probes.append(asyncio.create_task(self._probe(ip, sem, queue)))
            await asyncio.gather(*probes)
        except asyncio.CancelledError:
            for probe in probes:
                probe.cancel()
            await asyncio.gather(*probes, return_exceptions=True)
            raise

    async def _probe(self, ip: str, sem: asyncio.Semaphore, queue: asyncio.Queue) -> None:
        try:
            if await self._check_port(ip):
                logger.info("Found active host: %s:%d", ip, self.port)
                queue.put_nowait(DiscoveredHost(ip, self.port))
        finally:
            sem.release()

    async def _check_port(self, ip: str) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(ip, self.port), timeout=self.port_timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


def _interface_networks() -> list[tuple[str, ipaddress.IPv4Address, ipaddress.IPv4Network]]:
    """(interface, own address, subnet) for every up, non-loopback IPv4 address."""
    stats = psutil.net_if_stats()
    result = []
    for name, addrs in psutil.net_if_addrs().items():
        iface = stats.get(name)
        if iface is None or not iface.isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            try:
                iface_addr = ipaddress.IPv4Interface(f"{addr.address}/{addr.netmask}")
            except ValueError:
                continue
            own = iface_addr.ip
            if own.is_loopback or own.is_link_local:
                continue
            result.append((name, own, iface_addr.network))
    return result
