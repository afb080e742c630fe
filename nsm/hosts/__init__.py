"""nsm.hosts — the host roster.

Exports:
    Host, HostStatus, CMSStatus — record and status enumerations
    HostStore                   — SQLite-backed roster with backups and recovery
    BackupInfo                  — one entry in the backup directory
    check_health, probe_all     — layered network probes
"""

from __future__ import annotations

from nsm.hosts.health import check_health, probe_all
from nsm.hosts.models import CMSStatus, Host, HostStatus
from nsm.hosts.store import BackupInfo, HostStore

__all__ = [
    "BackupInfo",
    "CMSStatus",
    "Host",
    "HostStatus",
    "HostStore",
    "check_health",
    "probe_all",
]
