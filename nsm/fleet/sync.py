"""Fleet synchronisation: gossip between peers and discovery-driven registration.

There is no coordinator and no consensus. Each node:

  - pushes its roster to peers (``POST /api/hosts/receive``), best effort,
    one independent request per target;
  - accepts pushed rosters in *merge* mode (upsert each record, delete
    nothing) or *replace* mode (back up, then swap the whole roster);
  - scans the LAN and turns every live candidate into a roster record,
    evicting stale records whose address now belongs to another identity;
  - registers itself in its own roster on a timer.

Discovery resolution precedence (both paths): the identifier decides which
record is being written; any *other* record at the same address is then
evicted as stale before the write.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from nsm.config import NSMConfig
from nsm.discovery.scanner import DiscoveredHost, Scanner
from nsm.errors import HostConflictError, InvalidAddressError, NotFoundError, PeerUnreachableError, StoreIOError
from nsm.fleet.tasks import BackgroundTasks
from nsm.hosts.health import check_health, probe_all
from nsm.hosts.models import (
    NSM_OFFLINE,
    NSM_ONLINE,
    UNKNOWN_VERSION,
    CMSStatus,
    Host,
    HostStatus,
    dashboard_url,
    hosts_to_wire,
    utcnow,
)
from nsm.hosts.store import HostStore
from nsm.identity import LocalNode, is_meaningful_hostname

logger = logging.getLogger(__name__)

RECEIVE_PATH = "/api/hosts/receive"
LOCAL_HOST_PATH = "/api/host/local"
VERSION_PATH = "/api/version"
DISCOVERED_NICKNAME = "Discovered Host"
LOOPBACK = "127.0.0.1"


@dataclass
class ReceiveReport:
    """What an inbound push did to the roster."""

    mode: str
    received: int
    applied: int = 0
    evicted: int = 0
    failed: int = 0
    backup: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "received": self.received,
            "applied": self.applied,
            "evicted": self.evicted,
            "failed": self.failed,
            "backup": self.backup,
        }


@dataclass
class DiscoveryReport:
    """Summary of one discovery pass."""

    found: int = 0
    created: int = 0
    updated: int = 0
    evicted: int = 0
    failed: int = 0
    host_ids: list[str] = field(default_factory=list)


class FleetCoordinator:
    """Owns every roster operation that involves the network."""

    def __init__(
        self,
        config: NSMConfig,
        store: HostStore,
        node: LocalNode,
        client: httpx.AsyncClient | None = None,
        tasks: BackgroundTasks | None = None,
        scanner_factory: Callable[..., Scanner] = Scanner,
    ) -> None:
        self.config = config
        self.store = store
        self.node = node
        self.tasks = tasks if tasks is not None else BackgroundTasks(config.background_task_limit)
        self._client = client
        self._owns_client = client is None
        self._scanner_factory = scanner_factory
        self._discovery_task: asyncio.Task | None = None
        self.last_discovery: DiscoveryReport | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.peer_timeout)
        return self._client

    async def aclose(self) -> None:
        await self.tasks.shutdown()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Outbound push ──────────────────────────────────────────────

    def default_targets(self) -> list[str]:
        """Every known host address except loopback and this node."""
        own = {LOOPBACK, self.node.ip, self.config.host_ip}
        targets: list[str] = []
        for host in self.store.get_all():
            ip = host.ip_address
            if ip and ip not in own and ip not in targets:
                targets.append(ip)
        return targets

    async def push(
        self,
        targets: list[str] | None = None,
        hosts: list[Host] | None = None,
        merge: bool = False,
    ) -> dict[str, bool]:
        """Send *hosts* (default: the whole roster) to each target concurrently.

        Returns target → delivered. A failed target never affects the others.
        """
        if not targets:
            targets = self.default_targets()
        if hosts is None:
            hosts = self.store.get_all()
        payload = hosts_to_wire(hosts)

        logger.info("Pushing %d host(s) to %d target(s) (merge=%s)", len(hosts), len(targets), merge)
        results = await asyncio.gather(
            *(self._deliver(target, payload, merge) for target in targets)
        )
        outcome = dict(zip(targets, results))
        logger.info("Push complete: %d/%d delivered", sum(outcome.values()), len(outcome))
        return outcome

    def launch_push(self, targets: list[str] | None = None, merge: bool = False) -> list[str]:
        """Start a push in the background; returns the resolved targets."""
        targets = list(targets) if targets else self.default_targets()
        self.tasks.spawn(self.push(targets, merge=merge), name="push")
        return targets

    async def _deliver(self, target: str, payload: list[dict[str, Any]], merge: bool) -> bool:
        url = f"{self._peer_base(target)}{RECEIVE_PATH}"
        try:
            resp = await self.client.post(
                url,
                json=payload,
                params={"merge": "true"} if merge else None,
                timeout=self.config.push_timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("%s", PeerUnreachableError(target, str(exc) or type(exc).__name__))
            return False
        if resp.status_code >= 300:
            logger.warning("%s", PeerUnreachableError(target, f"HTTP {resp.status_code}"))
            return False
        return True

    # ── Inbound receive ────────────────────────────────────────────

    def receive(self, hosts: list[Host], merge: bool) -> ReceiveReport:
        """Apply a pushed roster.

        Merge mode upserts record by record; a bad record is logged and
        skipped. Replace mode backs up the roster, then swaps it atomically;
        errors there propagate to the caller.
        """
        if merge:
            report = ReceiveReport(mode="merge", received=len(hosts))
            for host in hosts:
                try:
                    report.evicted += self._apply_authoritative(host)
                    report.applied += 1
                except (InvalidAddressError, HostConflictError, StoreIOError) as exc:
                    report.failed += 1
                    logger.error("Failed to merge host %s: %s", host.ip_address or host.id, exc)
            logger.info("Merged %d/%d host(s) from peer", report.applied, report.received)
            return report

        for host in hosts:
            host.validate()
        backup = self.store.backup_current(self.config.replace_max_backups)
        self.store.replace_all(hosts)
        logger.info("Replaced host list with %d host(s) from peer", len(hosts))
        return ReceiveReport(
            mode="replace",
            received=len(hosts),
            applied=len(hosts),
            backup=str(backup) if backup else None,
        )

    def _apply_authoritative(self, host: Host) -> int:
        """Upsert *host*, first deleting any other record at its address.

        Returns the number of stale records evicted (0 or 1).
        """
        host.validate()
        evicted = 0
        if host.ip_address:
            try:
                occupant = self.store.get_by_ip(host.ip_address)
            except NotFoundError:
                occupant = None
            if occupant is not None and host.id and occupant.id != host.id:
                logger.warning(
                    "Replacing stale host %s (ID: %s) with ID %s",
                    occupant.ip_address, occupant.id or "-", host.id or "-",
                )
                try:
                    self.store.delete(occupant.ip_address)
                    evicted = 1
                except NotFoundError:
                    pass
        self.store.upsert(host)
        return evicted

    def announce(self, host: Host) -> Host:
        """Accept a single record a peer sent about itself."""
        if not host.id or not host.ip_address:
            raise ValueError("host id and ip_address are required")
        self._apply_authoritative(host)
        logger.info("Received host announcement: %s (ID: %s)", host.ip_address, host.id)
        return host

    # ── Discovery ──────────────────────────────────────────────────

    @property
    def discovery_running(self) -> bool:
        return self._discovery_task is not None and not self._discovery_task.done()

    def start_discovery(self, override_ip: str | None = None) -> bool:
        """Launch a discovery pass in the background.

        Returns ``False`` if one is already running. Raises
        :class:`InvalidAddressError` for a malformed override.
        """
        scanner = self._make_scanner(override_ip)
        if self.discovery_running:
            logger.info("Discovery already running")
            return False
        self._discovery_task = self.tasks.spawn(self.run_discovery(scanner=scanner), name="discovery")
        return self._discovery_task is not None

    def _make_scanner(self, override_ip: str | None) -> Scanner:
        return self._scanner_factory(
            port=self.config.port,
            override_ip=override_ip or self.config.host_ip or None,
            budget=self.config.scan_budget,
            concurrency=self.config.scan_concurrency,
            port_timeout=self.config.scan_port_timeout,
            subnet_limit=self.config.scan_subnet_limit,
        )

    async def run_discovery(
        self, override_ip: str | None = None, scanner: Scanner | None = None
    ) -> DiscoveryReport:
        """Scan, resolve every live candidate, probe, then re-check ourselves."""
        scanner = scanner or self._make_scanner(override_ip)
        report = DiscoveryReport()
        logger.info("Starting network discovery scan...")

        resolutions: list[asyncio.Task] = []
        try:
            async for candidate in scanner.scan():
                report.found += 1
                resolutions.append(asyncio.create_task(self._resolve_safely(candidate, report)))
            if resolutions:
                await asyncio.gather(*resolutions)
        except asyncio.CancelledError:
            for task in resolutions:
                task.cancel()
            raise

        await self._recheck_local()
        self.last_discovery = report
        logger.info(
            "Discovery scan complete: %d found, %d new, %d updated, %d stale evicted",
            report.found, report.created, report.updated, report.evicted,
        )
        return report

    async def _resolve_safely(self, candidate: DiscoveredHost, report: DiscoveryReport) -> None:
        try:
            await self.resolve_candidate(candidate, report)
        except (InvalidAddressError, HostConflictError, StoreIOError) as exc:
            report.failed += 1
            logger.error("Failed to register discovered host %s: %s", candidate.ip, exc)

    async def resolve_candidate(
        self, candidate: DiscoveredHost, report: DiscoveryReport | None = None
    ) -> Host | None:
        """Turn one live address into a roster record.

        Returns the stored record, or ``None`` if the candidate is this node.
        """
        report = report if report is not None else DiscoveryReport()
        base = self._peer_base(candidate.ip, candidate.port)
        described = await self._fetch_self_description(base)

        if described is not None:
            if described.id and described.id == self.node.id:
                return None
            host = described
            host.ip_address = candidate.ip
            # Our own probe decides the status, not the peer's claim.
            host.status = HostStatus.UNREACHABLE
            host.cms_status = CMSStatus.UNKNOWN
            host.nsm_status = NSM_OFFLINE
            host.asset_count = 0
            host.dashboard_url = dashboard_url(candidate.ip, candidate.port)
            is_new = not self._known_id(host.id)
        else:
            remote_id = await self._fetch_remote_id(base)
            if remote_id and remote_id == self.node.id:
                return None
            host, is_new = self._fallback_record(candidate, remote_id)

        if not host.id:
            host.id = str(uuid.uuid4())

        report.evicted += self._apply_authoritative(host)
        if is_new:
            report.created += 1
        else:
            report.updated += 1
        report.host_ids.append(host.id)
        logger.info("Discovered/updated host: %s (ID: %s)", candidate.ip, host.id)

        self.tasks.spawn(self.probe_and_store(host), name=f"probe {candidate.ip}")
        if described is not None:
            self.tasks.spawn(self._push_self(candidate.ip, candidate.port), name=f"mutual push {candidate.ip}")
        return host

    def _fallback_record(self, candidate: DiscoveredHost, remote_id: str) -> tuple[Host, bool]:
        """Record for a peer that could not describe itself."""
        if remote_id:
            try:
                existing = self.store.get_by_id(remote_id)
            except NotFoundError:
                existing = None
            if existing is not None:
                existing.ip_address = candidate.ip
                existing.reset_primary_network(candidate.port)
                return existing, False
        else:
            try:
                return self.store.get_by_ip(candidate.ip), False
            except NotFoundError:
                pass

        placeholder = Host(
            id=remote_id,
            nickname=DISCOVERED_NICKNAME,
            ip_address=candidate.ip,
            status=HostStatus.UNREACHABLE,
            nsm_status=NSM_OFFLINE,
            nsm_version=UNKNOWN_VERSION,
            cms_status=CMSStatus.UNKNOWN,
            dashboard_url=dashboard_url(candidate.ip, candidate.port),
        )
        return placeholder, True

    def _known_id(self, host_id: str) -> bool:
        if not host_id:
            return False
        try:
            self.store.get_by_id(host_id)
        except NotFoundError:
            return False
        return True

    async def _fetch_self_description(self, base: str) -> Host | None:
        try:
            payload = await self._get_json(f"{base}{LOCAL_HOST_PATH}")
        except PeerUnreachableError as exc:
            logger.debug("No self-description: %s", exc)
            return None
        if not isinstance(payload, dict):
            return None
        return Host.from_dict(payload)

    async def _fetch_remote_id(self, base: str) -> str:
        try:
            payload = await self._get_json(f"{base}{VERSION_PATH}")
        except PeerUnreachableError as exc:
            logger.debug("No version info: %s", exc)
            return ""
        if isinstance(payload, dict) and payload.get("id"):
            return str(payload["id"]).strip()
        return ""

    async def _get_json(self, url: str) -> Any:
        try:
            resp = await self.client.get(url, timeout=self.config.peer_timeout)
        except httpx.HTTPError as exc:
            raise PeerUnreachableError(url, str(exc) or type(exc).__name__) from exc
        if resp.status_code != 200:
            raise PeerUnreachableError(url, f"HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise PeerUnreachableError(url, "invalid JSON") from exc

    async def _push_self(self, ip: str, port: int) -> None:
        """Mutual discovery: tell the peer about us, in merge mode."""
        await self.push([f"{ip}:{port}"], hosts=[self.local_description()], merge=True)

    async def _recheck_local(self) -> None:
        try:
            stored = self.store.get_by_id(self.node.id)
        except NotFoundError:
            return
        await self.probe_and_store(stored)
        logger.info("Local host health check complete")

    # ── Health ─────────────────────────────────────────────────────

    async def probe(self, host: Host) -> Host:
        return await check_health(
            host,
            port=self.config.port,
            cms_port=self.config.cms_port,
            timeout=self.config.probe_timeout,
            client=self.client,
        )

    async def probe_and_store(self, host: Host) -> Host | None:
        """Probe *host* and write back only the probe-owned fields."""
        probed = await self.probe(host)
        key = probed.ip_address
        try:
            if key:
                return self.store.update(key, lambda current: current.copy_network_state(probed))
            if probed.id:
                current = self.store.get_by_id(probed.id)
                current.copy_network_state(probed)
                self.store.upsert(current)
                return current
        except NotFoundError:
            logger.debug("Host %s vanished before its probe finished", key or probed.id)
        return None

    async def check_all(self) -> list[Host]:
        logger.info("Starting health check of all hosts...")
        return await probe_all(
            self.store,
            port=self.config.port,
            cms_port=self.config.cms_port,
            timeout=self.config.probe_timeout,
            client=self.client,
        )

    def launch_check_all(self) -> None:
        self.tasks.spawn(self.check_all(), name="check all")

    def launch_check_one(self, ip: str) -> Host:
        """Queue a probe of the host at *ip*. Raises :class:`NotFoundError`."""
        host = self.store.get_by_ip(ip)
        logger.info("Checking health for %s...", ip)
        self.tasks.spawn(self.probe_and_store(host), name=f"probe {ip}")
        return host

    # ── Roster maintenance ─────────────────────────────────────────

    async def add_host(
        self,
        ip_address: str = "",
        vpn_ip_address: str = "",
        nickname: str = "",
        notes: str = "",
    ) -> Host:
        """Create a host, probe it once, then store it."""
        ip_address = ip_address.strip()
        vpn_ip_address = vpn_ip_address.strip()
        if not ip_address and not vpn_ip_address:
            raise ValueError("at least one IP address is required")

        host = Host(
            id=str(uuid.uuid4()),
            nickname=nickname.strip(),
            ip_address=ip_address,
            vpn_ip_address=vpn_ip_address,
            notes=notes,
            status=HostStatus.UNREACHABLE,
            status_vpn=HostStatus.UNREACHABLE if vpn_ip_address else None,
            cms_status=CMSStatus.UNKNOWN,
            last_checked=utcnow(),
        )
        host.validate()
        host = await self.probe(host)
        self.store.add(host)
        logger.info("Added new host: %s (%s)", host.nickname, host.ip_address or host.vpn_ip_address)
        return host

    def update_host(
        self,
        old_ip: str = "",
        ip_address: str = "",
        vpn_ip_address: str = "",
        nickname: str = "",
        notes: str = "",
        host_id: str = "",
    ) -> Host:
        """Inline edit. Changed addresses reset their probe state; a re-probe follows."""
        if host_id:
            current = self.store.get_by_id(host_id)
        else:
            current = self.store.get_by_ip(old_ip or ip_address)

        candidate = Host(ip_address=ip_address.strip(), vpn_ip_address=vpn_ip_address.strip())
        candidate.validate()
        port = self.config.port

        def apply(host: Host) -> None:
            host.nickname = nickname
            host.notes = notes
            if candidate.ip_address != host.ip_address:
                host.ip_address = candidate.ip_address
                host.reset_primary_network(port)
            if not candidate.vpn_ip_address:
                if host.vpn_ip_address or host.status_vpn is not None:
                    host.clear_vpn_network()
            elif candidate.vpn_ip_address != host.vpn_ip_address:
                host.vpn_ip_address = candidate.vpn_ip_address
                host.reset_vpn_network(port)

        if current.ip_address:
            updated = self.store.update(current.ip_address, apply)
        else:
            apply(current)
            self.store.upsert(current)
            updated = current

        logger.info("Updated host: %s", updated.id or updated.ip_address)
        if updated.ip_address or updated.vpn_ip_address:
            self.tasks.spawn(self.probe_and_store(updated), name=f"probe {updated.ip_address}")
        return updated

    def delete_host(self, ip: str) -> None:
        self.store.delete(ip)
        logger.info("Deleted host: %s", ip)

    def set_primary(self, host_id: str) -> int:
        """Keep *host_id* and delete every other record with its hostname."""
        primary = self.store.get_by_id(host_id)
        if not primary.hostname:
            logger.info("Host %s has no hostname; nothing to deduplicate", host_id)
            return 0

        removed = 0
        for host in self.store.get_all():
            if host.hostname != primary.hostname or host.id == primary.id:
                continue
            try:
                if host.ip_address:
                    self.store.delete(host.ip_address)
                else:
                    self.store.delete_by_id(host.id)
                removed += 1
            except NotFoundError:
                continue
        logger.info(
            "Set %s as primary for %s, removed %d duplicate(s)",
            primary.ip_address, primary.hostname, removed,
        )
        return removed

    # ── Local node ─────────────────────────────────────────────────

    def local_description(self) -> Host:
        """Our stored record, else a minimal healthy one."""
        try:
            return self.store.get_by_id(self.node.id)
        except NotFoundError:
            return Host(
                id=self.node.id,
                nickname="Local Host",
                hostname=self.node.hostname,
                ip_address=self.node.ip,
                status=HostStatus.HEALTHY,
                nsm_status=NSM_ONLINE,
                nsm_version=self.node.version,
                last_checked=utcnow(),
            )

    def register_local(self) -> Host | None:
        """Put this node into its own roster as Healthy.

        Operator edits to an existing record are kept. A new record is
        skipped if another host already carries this node's hostname.
        """
        meta = self.node.describe()
        meta.status = HostStatus.HEALTHY
        meta.nsm_status = NSM_ONLINE
        meta.nsm_version = self.node.version
        meta.last_checked = utcnow()

        try:
            existing = self.store.get_by_id(meta.id)
        except NotFoundError:
            existing = None

        if existing is not None:
            if existing.nickname:
                meta.nickname = existing.nickname
            if existing.notes:
                meta.notes = existing.notes
            if existing.ip_address != meta.ip_address:
                meta.ip_address = existing.ip_address
                meta.dashboard_url = existing.dashboard_url
            meta.vpn_ip_address = existing.vpn_ip_address
            for name in ("status_vpn", "nsm_status_vpn", "nsm_version_vpn", "cms_status_vpn",
                         "asset_count_vpn", "dashboard_url_vpn", "last_checked_vpn"):
                setattr(meta, name, getattr(existing, name))
            meta.cms_status = existing.cms_status
            meta.asset_count = existing.asset_count
        else:
            if is_meaningful_hostname(meta.hostname):
                for host in self.store.get_all():
                    if host.hostname == meta.hostname:
                        logger.debug("Skipping self-registration, hostname %s already listed", meta.hostname)
                        return None

        try:
            self._apply_authoritative(meta)
        except (HostConflictError, StoreIOError, InvalidAddressError) as exc:
            logger.warning("Failed to update local host: %s", exc)
            return None
        if existing is None:
            logger.info("Added local host to host list")
        return meta

    # ── Helpers ────────────────────────────────────────────────────

    def _peer_base(self, target: str, port: int | None = None) -> str:
        target = target.strip()
        if target.startswith(("http://", "https://")):
            return target.rstrip("/")
        if ":" in target:
            return f"http://{target}"
        return f"http://{target}:{port or self.config.port}"


class LocalRegistrationLoop:
    """Re-registers this node every ``interval`` seconds."""

    def __init__(self, coordinator: FleetCoordinator, interval: float = 30.0) -> None:
        self.coordinator = coordinator
        self.interval = interval
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Local registration loop is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Local registration loop started (interval=%.0fs)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Local registration loop stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _loop(self) -> None:
        while self._running:
            try:
                self.coordinator.register_local()
            except Exception as exc:
                logger.error("Local registration failed: %s", exc)
            await asyncio.sleep(self.interval)
