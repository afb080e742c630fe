"""Host record and its wire format.

A :class:`Host` carries descriptive fields edited by operators (nickname,
notes), identity (``id``, ``hostname``) and two copies of the network state:
one for the primary LAN address and one for the optional VPN address. The
``*_vpn`` fields mirror their primary counterparts.

The wire format is a JSON object keyed by field name (see :data:`WIRE_FIELDS`);
peers exchange lists of these objects.
"""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from nsm.errors import InvalidAddressError

logger = logging.getLogger(__name__)


class HostStatus(str, Enum):
    """Reachability of the management service on one network path."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    UNREACHABLE = "Unreachable"
    CONNECTION_REFUSED = "Connection Refused"

    @classmethod
    def parse(cls, value: Any, default: HostStatus | None = None) -> HostStatus | None:
        """Map wire text to a member; empty or unrecognised text gives *default*."""
        if isinstance(value, cls):
            return value
        if not value:
            return default
        text = str(value).strip()
        for member in cls:
            if text == member.value or text.lower() == member.name.lower():
                return member
        logger.debug("Unrecognised host status %r, using %s", text, default)
        return default


class CMSStatus(str, Enum):
    """Whether the Anthias content API answered on the host."""

    ONLINE = "Online"
    OFFLINE = "Offline"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> CMSStatus:
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if text == member.value.lower():
                return member
        return cls.UNKNOWN


NSM_ONLINE = "NSM Online"
NSM_OFFLINE = "NSM Offline"
UNKNOWN_VERSION = "unknown"

# Canonical field order of the peer wire format.
WIRE_FIELDS: tuple[str, ...] = (
    "nickname",
    "ip_address",
    "vpn_ip_address",
    "hostname",
    "notes",
    "status",
    "status_vpn",
    "nsm_status",
    "nsm_status_vpn",
    "nsm_version",
    "nsm_version_vpn",
    "anthias_version",
    "anthias_version_vpn",
    "anthias_status",
    "anthias_status_vpn",
    "cms_status",
    "cms_status_vpn",
    "asset_count",
    "asset_count_vpn",
    "dashboard_url",
    "dashboard_url_vpn",
    "last_checked",
    "last_checked_vpn",
    "id",
)

# Fields a health probe owns, per network path.
PRIMARY_NETWORK_FIELDS: tuple[str, ...] = (
    "status",
    "nsm_status",
    "nsm_version",
    "cms_status",
    "asset_count",
    "dashboard_url",
    "last_checked",
)
VPN_NETWORK_FIELDS: tuple[str, ...] = tuple(f"{name}_vpn" for name in PRIMARY_NETWORK_FIELDS)


@dataclass
class Host:
    """One entry in the fleet roster."""

    ip_address: str = ""
    id: str = ""
    nickname: str = ""
    hostname: str = ""
    notes: str = ""
    vpn_ip_address: str = ""

    # Primary network
    status: HostStatus = HostStatus.UNREACHABLE
    nsm_status: str = ""
    nsm_version: str = ""
    anthias_version: str = ""
    anthias_status: str = ""
    cms_status: CMSStatus = CMSStatus.UNKNOWN
    asset_count: int = 0
    dashboard_url: str = ""
    last_checked: datetime | None = None

    # Secondary (VPN) network
    status_vpn: HostStatus | None = None
    nsm_status_vpn: str = ""
    nsm_version_vpn: str = ""
    anthias_version_vpn: str = ""
    anthias_status_vpn: str = ""
    cms_status_vpn: CMSStatus = CMSStatus.UNKNOWN
    asset_count_vpn: int = 0
    dashboard_url_vpn: str = ""
    last_checked_vpn: datetime | None = None

    def copy(self) -> Host:
        return dataclasses.replace(self)

    def validate(self) -> None:
        """Raise :class:`InvalidAddressError` if a present address is not IPv4."""
        if self.ip_address and not is_valid_ipv4(self.ip_address):
            raise InvalidAddressError(self.ip_address, "ip_address")
        if self.vpn_ip_address and not is_valid_ipv4(self.vpn_ip_address):
            raise InvalidAddressError(self.vpn_ip_address, "vpn_ip_address")

    # ── Network state helpers ──────────────────────────────────────

    def reset_primary_network(self, port: int = 8080) -> None:
        """Forget probe results for the primary address (e.g. after an IP change)."""
        self.status = HostStatus.UNREACHABLE
        self.nsm_status = NSM_OFFLINE
        self.nsm_version = UNKNOWN_VERSION
        self.cms_status = CMSStatus.UNKNOWN
        self.asset_count = 0
        self.dashboard_url = dashboard_url(self.ip_address, port) if self.ip_address else ""
        self.last_checked = None

    def reset_vpn_network(self, port: int = 8080) -> None:
        self.status_vpn = HostStatus.UNREACHABLE
        self.nsm_status_vpn = NSM_OFFLINE
        self.nsm_version_vpn = UNKNOWN_VERSION
        self.cms_status_vpn = CMSStatus.UNKNOWN
        self.asset_count_vpn = 0
        self.dashboard_url_vpn = dashboard_url(self.vpn_ip_address, port) if self.vpn_ip_address else ""
        self.last_checked_vpn = None

    def clear_vpn_network(self) -> None:
        self.vpn_ip_address = ""
        self.status_vpn = None
        self.nsm_status_vpn = ""
        self.nsm_version_vpn = ""
        self.cms_status_vpn = CMSStatus.UNKNOWN
        self.asset_count_vpn = 0
        self.dashboard_url_vpn = ""
        self.last_checked_vpn = None

    def copy_network_state(self, other: Host) -> None:
        """Take *other*'s probe-owned fields for both paths; leave the rest alone."""
        for name in PRIMARY_NETWORK_FIELDS + VPN_NETWORK_FIELDS:
            setattr(self, name, getattr(other, name))

    # ── Wire format ────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "nickname": self.nickname,
            "ip_address": self.ip_address,
            "vpn_ip_address": self.vpn_ip_address,
            "hostname": self.hostname,
            "notes": self.notes,
            "status": self.status.value,
            "status_vpn": self.status_vpn.value if self.status_vpn else "",
            "nsm_status": self.nsm_status,
            "nsm_status_vpn": self.nsm_status_vpn,
            "nsm_version": self.nsm_version,
            "nsm_version_vpn": self.nsm_version_vpn,
            "anthias_version": self.anthias_version,
            "anthias_version_vpn": self.anthias_version_vpn,
            "anthias_status": self.anthias_status,
            "anthias_status_vpn": self.anthias_status_vpn,
            "cms_status": self.cms_status.value,
            "cms_status_vpn": self.cms_status_vpn.value,
            "asset_count": self.asset_count,
            "asset_count_vpn": self.asset_count_vpn,
            "dashboard_url": self.dashboard_url,
            "dashboard_url_vpn": self.dashboard_url_vpn,
            "last_checked": format_time(self.last_checked),
            "last_checked_vpn": format_time(self.last_checked_vpn),
            "id": self.id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Host:
        """Build a host from a wire record. Unknown keys are ignored."""

        def text(key: str) -> str:
            value = data.get(key)
            return "" if value is None else str(value).strip()

        def count(key: str) -> int:
            try:
                return int(data.get(key) or 0)
            except (TypeError, ValueError):
                return 0

        return cls(
            id=text("id"),
            nickname=text("nickname"),
            ip_address=text("ip_address"),
            vpn_ip_address=text("vpn_ip_address"),
            hostname=text("hostname"),
            notes=text("notes"),
            status=HostStatus.parse(data.get("status"), HostStatus.UNREACHABLE),
            status_vpn=HostStatus.parse(data.get("status_vpn")),
            nsm_status=text("nsm_status"),
            nsm_status_vpn=text("nsm_status_vpn"),
            nsm_version=text("nsm_version"),
            nsm_version_vpn=text("nsm_version_vpn"),
            anthias_version=text("anthias_version"),
            anthias_version_vpn=text("anthias_version_vpn"),
            anthias_status=text("anthias_status"),
            anthias_status_vpn=text("anthias_status_vpn"),
            cms_status=CMSStatus.parse(data.get("cms_status")),
            cms_status_vpn=CMSStatus.parse(data.get("cms_status_vpn")),
            asset_count=count("asset_count"),
            asset_count_vpn=count("asset_count_vpn"),
            dashboard_url=text("dashboard_url"),
            dashboard_url_vpn=text("dashboard_url_vpn"),
            last_checked=parse_time(data.get("last_checked")),
            last_checked_vpn=parse_time(data.get("last_checked_vpn")),
        )


def hosts_to_wire(hosts: list[Host]) -> list[dict[str, Any]]:
    return [h.to_dict() for h in hosts]


def hosts_from_wire(payload: Any) -> list[Host]:
    """Decode a peer payload. Raises ``ValueError`` if it is not a list of objects."""
    if not isinstance(payload, list):
        raise ValueError("host payload must be a JSON array")
    hosts: list[Host] = []
    for item in payload:
        if not isinstance(item, dict):
            raise ValueError("host payload entries must be JSON objects")
        hosts.append(Host.from_dict(item))
    return hosts


def is_valid_ipv4(value: str) -> bool:
    if not value:
        return False
    try:
        ipaddress.IPv4Address(value.strip())
    except ValueError:
        return False
    return True


def dashboard_url(ip: str, port: int = 8080) -> str:
    return f"http://{ip}:{port}"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_time(value: Any) -> datetime | None:
    """Parse an ISO-8601 / RFC 3339 timestamp; Go's zero time maps to ``None``."""
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    text = str(value).strip()
    if text.startswith("0001-01-01"):
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Go emits nanoseconds; fromisoformat accepts at most microseconds.
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
