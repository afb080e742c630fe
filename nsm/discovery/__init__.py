"""nsm.discovery — finding other nsm instances on the LAN.

Exports:
    DiscoveredHost  — an address that accepted a connection on the nsm port
    Scanner         — budgeted concurrent TCP sweep of local subnets
    MdnsService     — mDNS announce + browse
    PeerDirectory   — peers seen via mDNS
"""

from __future__ import annotations

from nsm.discovery.mdns import MdnsService, Peer, PeerDirectory
from nsm.discovery.scanner import DiscoveredHost, Scanner

__all__ = [
    "DiscoveredHost",
    "MdnsService",
    "Peer",
    "PeerDirectory",
    "Scanner",
]
