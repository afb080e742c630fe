"""Health probes for roster hosts.

Each network path of a host (primary address, then the VPN address if set)
is classified independently:

  1. TCP connect to the management port. Refused → ``Connection Refused``;
     no route, name failure or timeout → ``Unreachable``.
  2. GET ``http://<ip>:<cms_port>/api/v1/assets``: 200 → CMS ``Online``,
     anything else → ``Offline``. Also yields the asset count.
  3. GET ``/api/version`` on the management port fills ``nsm_version``.
  4. GET ``/api/health`` on the management port: 200 → ``Healthy``,
     anything else → ``Unhealthy``.

Probes never raise for network failures; a failed step degrades the status.
Operator fields (nickname, notes, hostname) are never touched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import httpx

from nsm.hosts.models import (
    NSM_OFFLINE,
    NSM_ONLINE,
    UNKNOWN_VERSION,
    CMSStatus,
    Host,
    HostStatus,
    dashboard_url,
    utcnow,
)

if TYPE_CHECKING:
    from nsm.hosts.store import HostStore

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
DEFAULT_CMS_PORT = 80
DEFAULT_TIMEOUT = 3.0

CMS_ASSETS_PATH = "/api/v1/assets"
VERSION_PATH = "/api/version"
HEALTH_PATH = "/api/health"


@dataclass
class ProbeResult:
    """Outcome of probing one address."""

    status: HostStatus
    cms_status: CMSStatus = CMSStatus.UNKNOWN
    nsm_version: str = UNKNOWN_VERSION
    asset_count: int = 0
    dashboard_url: str = ""
    checked_at: datetime | None = None

    @property
    def nsm_status(self) -> str:
        return NSM_ONLINE if self.status is HostStatus.HEALTHY else NSM_OFFLINE

    def apply(self, host: Host, vpn: bool = False) -> None:
        """Write this result into the probe-owned fields of one network path."""
        suffix = "_vpn" if vpn else ""
        setattr(host, f"status{suffix}", self.status)
        setattr(host, f"nsm_status{suffix}", self.nsm_status)
        setattr(host, f"nsm_version{suffix}", self.nsm_version)
        setattr(host, f"cms_status{suffix}", self.cms_status)
        setattr(host, f"last_checked{suffix}", self.checked_at)
        if self.cms_status is CMSStatus.ONLINE:
            setattr(host, f"asset_count{suffix}", self.asset_count)
        if self.dashboard_url:
            setattr(host, f"dashboard_url{suffix}", self.dashboard_url)


async def dial(ip: str, port: int, timeout: float) -> HostStatus | None:
    """TCP connect to ``ip:port``. ``None`` on success, else the failure status."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=timeout)
    except ConnectionRefusedError:
        return HostStatus.CONNECTION_REFUSED
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("TCP probe %s:%d failed: %s", ip, port, exc)
        return HostStatus.UNREACHABLE
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return None


async def probe_address(
    ip: str,
    port: int = DEFAULT_PORT,
    cms_port: int = DEFAULT_CMS_PORT,
    timeout: float = DEFAULT_TIMEOUT,
    client: httpx.AsyncClient | None = None,
) -> ProbeResult:
    """Run the layered probe against one address."""
    checked_at = utcnow()
    failure = await dial(ip, port, timeout)
    if failure is not None:
        return ProbeResult(status=failure, checked_at=checked_at)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)
    try:
        cms_status, asset_count = await _check_cms(client, ip, cms_port, timeout)
        version = await _fetch_version(client, ip, port, timeout)
        status = await _check_health(client, ip, port, timeout)
    finally:
        if owns_client:
            await client.aclose()

    return ProbeResult(
        status=status,
        cms_status=cms_status,
        nsm_version=version,
        asset_count=asset_count,
        dashboard_url=dashboard_url(ip, port),
        checked_at=checked_at,
    )


async def check_health(
    host: Host,
    port: int = DEFAULT_PORT,
    cms_port: int = DEFAULT_CMS_PORT,
    timeout: float = DEFAULT_TIMEOUT,
    client: httpx.AsyncClient | None = None,
) -> Host:
    """Probe every address of *host* and return an updated copy."""
    updated = host.copy()
    if updated.ip_address:
        result = await probe_address(updated.ip_address, port, cms_port, timeout, client)
        result.apply(updated)
    else:
        updated.status = HostStatus.UNREACHABLE
        updated.nsm_status = NSM_OFFLINE
        updated.last_checked = utcnow()

    if updated.vpn_ip_address:
        result = await probe_address(updated.vpn_ip_address, port, cms_port, timeout, client)
        result.apply(updated, vpn=True)

    logger.debug(
        "Probed %s (%s): %s / CMS %s",
        updated.ip_address or updated.vpn_ip_address,
        updated.nickname or updated.hostname,
        updated.status.value,
        updated.cms_status.value,
    )
    return updated


async def probe_all(
    store: HostStore,
    port: int = DEFAULT_PORT,
    cms_port: int = DEFAULT_CMS_PORT,
    timeout: float = DEFAULT_TIMEOUT,
    client: httpx.AsyncClient | None = None,
) -> list[Host]:
    """Probe every stored host concurrently and persist the results in one write.

    Only probe-owned fields are written back, onto the roster as it is when
    the sweep ends: edits, additions and deletions made meanwhile survive.
    A host whose probe raises keeps its previous state; the sweep continues.
    """
    hosts = store.get_all()
    if not hosts:
        return []

    results = await asyncio.gather(
        *(check_health(h, port, cms_port, timeout, client) for h in hosts),
        return_exceptions=True,
    )

    by_id: dict[str, Host] = {}
    by_ip: dict[str, Host] = {}
    for original, result in zip(hosts, results):
        if isinstance(result, BaseException):
            logger.warning("Health probe for %s failed: %s", original.ip_address, result)
            continue
        if result.id:
            by_id[result.id] = result
        elif result.ip_address:
            by_ip[result.ip_address] = result

    def merge(current: list[Host]) -> list[Host]:
        for host in current:
            probed = by_id.get(host.id) if host.id else by_ip.get(host.ip_address)
            # Skip hosts whose addresses were edited while the probe ran.
            if probed is None or probed.ip_address != host.ip_address:
                continue
            if probed.vpn_ip_address != host.vpn_ip_address:
                continue
            host.copy_network_state(probed)
        return current

    updated = store.rewrite(merge)
    healthy = sum(1 for h in updated if h.status is HostStatus.HEALTHY)
    logger.info("Health sweep complete: %d/%d hosts healthy", healthy, len(updated))
    return updated


# ── HTTP steps ─────────────────────────────────────────────────────


async def _check_cms(
    client: httpx.AsyncClient, ip: str, cms_port: int, timeout: float
) -> tuple[CMSStatus, int]:
    host = ip if cms_port == 80 else f"{ip}:{cms_port}"
    url = f"http://{host}{CMS_ASSETS_PATH}"
    try:
        resp = await client.get(url, timeout=timeout)
    except httpx.HTTPError as exc:
        logger.debug("CMS probe %s failed: %s", url, exc)
        return CMSStatus.OFFLINE, 0
    if resp.status_code != 200:
        return CMSStatus.OFFLINE, 0
    try:
        payload = resp.json()
    except ValueError:
        return CMSStatus.ONLINE, 0
    return CMSStatus.ONLINE, len(payload) if isinstance(payload, list) else 0


async def _fetch_version(client: httpx.AsyncClient, ip: str, port: int, timeout: float) -> str:
    try:
        resp = await client.get(f"http://{ip}:{port}{VERSION_PATH}", timeout=timeout)
        if resp.status_code != 200:
            return UNKNOWN_VERSION
        payload = resp.json()
    except (httpx.HTTPError, ValueError):
        return UNKNOWN_VERSION
    if isinstance(payload, dict) and payload.get("version"):
        return str(payload["version"])
    return UNKNOWN_VERSION


async def _check_health(client: httpx.AsyncClient, ip: str, port: int, timeout: float) -> HostStatus:
    try:
        resp = await client.get(f"http://{ip}:{port}{HEALTH_PATH}", timeout=timeout)
    except httpx.HTTPError as exc:
        logger.debug("Health endpoint on %s failed: %s", ip, exc)
        return HostStatus.UNHEALTHY
    return HostStatus.HEALTHY if resp.status_code == 200 else HostStatus.UNHEALTHY
