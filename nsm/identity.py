"""This node's identity and self-description."""

from __future__ import annotations

import logging
import platform
import shutil
import socket
import uuid
from pathlib import Path

import psutil

from nsm import __version__
from nsm.config import NSMConfig
from nsm.hosts.models import UNKNOWN_VERSION, Host, HostStatus, NSM_OFFLINE, dashboard_url, is_valid_ipv4

logger = logging.getLogger(__name__)

# WSL / Hyper-V virtual switch address, never the address peers should use.
IGNORED_ADDRESSES = {"10.255.255.254"}
FALLBACK_IP = "127.0.0.1"
MEANINGLESS_HOSTNAMES = {"", "localhost", "unknown"}


def load_or_create_node_id(path: str | Path) -> str:
    """Read the persistent node id, generating and saving a UUID4 on first use."""
    path = Path(path)
    try:
        node_id = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        node_id = ""
    except OSError as exc:
        logger.warning("Could not read identity file %s: %s", path, exc)
        node_id = ""

    if node_id:
        return node_id

    node_id = str(uuid.uuid4())
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(node_id, encoding="utf-8")
        logger.info("Generated node id %s (%s)", node_id, path)
    except OSError as exc:
        logger.warning("Failed to save identity file %s: %s", path, exc)
    return node_id


def primary_ipv4(override: str = "") -> str:
    """Configured address, else the first non-loopback IPv4 of an up interface."""
    override = (override or "").strip()
    if override:
        return override

    try:
        stats = psutil.net_if_stats()
        interfaces = psutil.net_if_addrs()
    except OSError as exc:
        logger.warning("Could not enumerate interfaces: %s", exc)
        return FALLBACK_IP

    for name, addrs in interfaces.items():
        if name in stats and not stats[name].isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            ip = addr.address
            if ip.startswith("127.") or ip in IGNORED_ADDRESSES or not is_valid_ipv4(ip):
                continue
            return ip
    return FALLBACK_IP


def is_meaningful_hostname(hostname: str) -> bool:
    return (hostname or "").strip().lower() not in MEANINGLESS_HOSTNAMES


class LocalNode:
    """Who this instance is: id, hostname, advertised address, version."""

    def __init__(self, config: NSMConfig, node_id: str | None = None, hostname: str | None = None) -> None:
        self.config = config
        self.id = node_id or load_or_create_node_id(config.identity_path)
        self.hostname = hostname or _hostname()
        self.version = __version__

    @property
    def ip(self) -> str:
        return primary_ipv4(self.config.host_ip)

    def describe(self) -> Host:
        """A fresh record for this node, before any probe results."""
        ip = self.ip
        return Host(
            id=self.id,
            nickname=self.hostname,
            hostname=self.hostname,
            ip_address=ip,
            dashboard_url=dashboard_url(ip, self.config.port),
            status=HostStatus.UNREACHABLE,
            nsm_status=NSM_OFFLINE,
            nsm_version=UNKNOWN_VERSION,
            anthias_version=detect_anthias_version(),
            anthias_status="unknown",
        )

    def version_info(self) -> dict[str, str]:
        return {
            "version": self.version,
            "status": "ok",
            "hostname": self.hostname,
            "id": self.id,
            "python": platform.python_version(),
            "platform": f"{platform.system().lower()}/{platform.machine()}",
        }


def detect_anthias_version() -> str:
    """``"detected"`` when an ``anthias`` executable is on PATH."""
    return "detected" if shutil.which("anthias") else UNKNOWN_VERSION


def _hostname() -> str:
    try:
        return socket.gethostname() or "unknown"
    except OSError:
        return "unknown"
