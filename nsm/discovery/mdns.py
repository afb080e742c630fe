"""mDNS presence for nsm instances.

Each instance announces ``_nsm._tcp.local.`` with its port and node id, and
browses for other instances. Peers seen on the LAN are kept in a
:class:`PeerDirectory`; goodbye packets remove them again.

The directory is informational. It feeds ``GET /api/peers`` and never
writes to the host roster.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

logger = logging.getLogger(__name__)

NSM_SERVICE = "_nsm._tcp.local."
RESOLVE_TIMEOUT_MS = 3000


@dataclass
class Peer:
    """An nsm instance seen via mDNS."""

    name: str
    hostname: str = ""
    addresses: list[str] = field(default_factory=list)
    port: int = 0
    properties: dict[str, str] = field(default_factory=dict)
    last_seen: float = field(default_factory=time.time)

    @property
    def node_id(self) -> str:
        return self.properties.get("id", "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "hostname": self.hostname,
            "addresses": list(self.addresses),
            "port": self.port,
            "properties": dict(self.properties),
            "last_seen": self.last_seen,
        }


class PeerDirectory:
    """Thread-safe map of mDNS instance name → :class:`Peer`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._peers: dict[str, Peer] = {}

    def upsert(self, peer: Peer) -> bool:
        """Store *peer*; returns ``True`` if the name was not known before."""
        with self._lock:
            is_new = peer.name not in self._peers
            self._peers[peer.name] = peer
        return is_new

    def remove(self, name: str) -> None:
        with self._lock:
            self._peers.pop(name, None)

    def list(self) -> list[Peer]:
        with self._lock:
            return sorted(self._peers.values(), key=lambda p: p.name)

    def addresses(self) -> list[str]:
        """``ip:port`` for every peer with a known IPv4 address."""
        return [f"{p.addresses[0]}:{p.port}" for p in self.list() if p.addresses]

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)


class MdnsService:
    """Announces this node and keeps a :class:`PeerDirectory` of the others."""

    def __init__(
        self,
        port: int,
        ip: str,
        node_id: str,
        version: str,
        hostname: str | None = None,
        service_name: str = NSM_SERVICE,
        directory: PeerDirectory | None = None,
    ) -> None:
        self.port = port
        self.ip = ip
        self.node_id = node_id
        self.version = version
        self.hostname = hostname or socket.gethostname()
        self.service_name = service_name
        self.directory = directory if directory is not None else PeerDirectory()
        self.instance_name = f"{self.hostname}.{service_name}"

        self._aiozc: AsyncZeroconf | None = None
        self._info: AsyncServiceInfo | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._pending: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._aiozc is not None

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        if self._aiozc is not None:
            return
        try:
            self._aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
            self._info = AsyncServiceInfo(
                self.service_name,
                self.instance_name,
                addresses=[socket.inet_aton(self.ip)],
                port=self.port,
                properties={"id": self.node_id, "version": self.version, "hostname": self.hostname},
                server=f"{self.hostname}.local.",
            )
            await self._aiozc.async_register_service(self._info, allow_name_change=True)
            self._browser = AsyncServiceBrowser(
                self._aiozc.zeroconf, [self.service_name], handlers=[self._on_state_change]
            )
            logger.info("mDNS: announcing %s at %s:%d", self.service_name, self.ip, self.port)
        except Exception:
            logger.exception("Failed to start mDNS presence")
            await self.stop()

    async def stop(self) -> None:
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
        if self._browser is not None:
            await self._browser.async_cancel()
            self._browser = None
        if self._aiozc is not None:
            if self._info is not None:
                try:
                    await self._aiozc.async_unregister_service(self._info)
                except Exception:
                    logger.debug("mDNS unregister failed", exc_info=True)
            await self._aiozc.async_close()
            self._aiozc = None
            self._info = None
            logger.info("mDNS: stopped")

    # ── Browsing ───────────────────────────────────────────────────

    def _on_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change is ServiceStateChange.Removed:
            logger.info("mDNS: peer removed: %s", name)
            self.directory.remove(name)
            return
        if name == self.instance_name:
            return
        task = asyncio.ensure_future(self._resolve(zeroconf, service_type, name))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _resolve(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zeroconf, RESOLVE_TIMEOUT_MS):
            logger.debug("mDNS: could not resolve %s", name)
            return
        peer = peer_from_info(name, info)
        if peer.node_id and peer.node_id == self.node_id:
            return
        if self.directory.upsert(peer):
            logger.info(
                "mDNS: peer discovered: %s (%s:%d)",
                name,
                peer.addresses[0] if peer.addresses else "no addr yet",
                peer.port,
            )


def peer_from_info(name: str, info: AsyncServiceInfo) -> Peer:
    properties = {
        k.decode() if isinstance(k, bytes) else k:
        v.decode() if isinstance(v, bytes) else (v or "")
        for k, v in (info.properties or {}).items()
    }
    return Peer(
        name=name,
        hostname=(info.server or "").rstrip("."),
        addresses=info.parsed_addresses(IPVersion.V4Only),
        port=info.port or 0,
        properties=properties,
    )
