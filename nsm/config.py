"""Configuration for an nsm instance.

Loaded from an optional JSON file, then overridden by environment variables.
The resulting :class:`NSMConfig` is built once at startup and handed to every
component that needs it.

Environment::

    NSM_CONFIG          path to a JSON config file
    NSM_DATA_DIR        directory holding hosts.db, backups/ and identity.id
    NSM_HOST_DATA_FILE  explicit path to the host database
    PORT / NSM_PORT     HTTP port (also the port peers are reached on)
    NSM_HOST_IP         IP address this node advertises to its peers
    NSM_LOG_LEVEL       logging level for the entry point
    NSM_ENABLE_MDNS     "0"/"false" disables mDNS announce + browse
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)

_FALSEY = {"0", "false", "no", "off"}


@dataclass
class NSMConfig:
    """Runtime options for the roster service."""

    data_dir: str = "./data"
    host_data_file: str = ""
    identity_file: str = ""
    port: int = 8080
    cms_port: int = 80
    host_ip: str = ""
    log_level: str = "INFO"

    # mDNS presence
    mdns_service_name: str = "_nsm._tcp.local."
    enable_mdns: bool = True

    # Network timeouts (seconds)
    probe_timeout: float = 3.0
    peer_timeout: float = 2.0
    push_timeout: float = 5.0
    scan_port_timeout: float = 0.5

    # Discovery budget
    scan_budget: float = 30.0
    scan_concurrency: int = 50
    scan_subnet_limit: int = 512

    # Backup retention
    max_backups: int = 20
    export_max_backups: int = 100
    replace_max_backups: int = 10

    # Background work
    local_update_interval: float = 30.0
    activity_log_size: int = 200
    background_task_limit: int = 64

    # ── Derived paths ──────────────────────────────────────────────

    @property
    def db_path(self) -> Path:
        if self.host_data_file:
            return Path(self.host_data_file)
        return Path(self.data_dir) / "hosts.db"

    @property
    def identity_path(self) -> Path:
        if self.identity_file:
            return Path(self.identity_file)
        return Path(self.data_dir) / "identity.id"

    # ── Loading ────────────────────────────────────────────────────

    @classmethod
    def load(cls, path: str | Path) -> NSMConfig:
        """Read a JSON config file. Missing or unreadable files yield defaults."""
        path = Path(path)
        if not path.exists():
            logger.warning("Config not found at %s, using defaults", path)
            return cls()
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not parse config %s (%s), using defaults", path, exc)
            return cls()
        if not isinstance(data, dict):
            logger.warning("Config %s is not a JSON object, using defaults", path)
            return cls()
        known = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(**filtered)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> NSMConfig:
        """Build the config from ``NSM_CONFIG`` (if set) plus env overrides."""
        env = os.environ if environ is None else environ
        config_path = env.get("NSM_CONFIG")
        cfg = cls.load(config_path) if config_path else cls()

        if env.get("NSM_DATA_DIR"):
            cfg.data_dir = env["NSM_DATA_DIR"]
        if env.get("NSM_HOST_DATA_FILE"):
            cfg.host_data_file = env["NSM_HOST_DATA_FILE"]
        port = env.get("NSM_PORT") or env.get("PORT")
        if port:
            try:
                cfg.port = int(port)
            except ValueError:
                logger.warning("Ignoring non-numeric port %r", port)
        if env.get("NSM_HOST_IP"):
            cfg.host_ip = env["NSM_HOST_IP"].strip()
        if env.get("NSM_LOG_LEVEL"):
            cfg.log_level = env["NSM_LOG_LEVEL"].upper()
        if "NSM_ENABLE_MDNS" in env:
            cfg.enable_mdns = env["NSM_ENABLE_MDNS"].strip().lower() not in _FALSEY
        return cfg

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)
