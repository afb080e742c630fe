"""pytest configuration for nsm tests."""

from __future__ import annotations

import pytest

from nsm.config import NSMConfig
from nsm.hosts.models import HostStatus
from nsm.hosts.store import HostStore
from nsm.identity import LocalNode


@pytest.fixture
def config(tmp_path):
    return NSMConfig(
        data_dir=str(tmp_path / "data"),
        host_ip="10.0.0.99",
        enable_mdns=False,
        probe_timeout=0.2,
        peer_timeout=0.2,
        push_timeout=0.2,
        scan_budget=1.0,
    )


@pytest.fixture
def store(config):
    s = HostStore(config.db_path)
    yield s
    s.close()


@pytest.fixture
def node(config):
    return LocalNode(config, node_id="node-local", hostname="nsm-test")


@pytest.fixture
def refuse_dial(monkeypatch):
    """Every TCP probe sees a closed port; no real sockets are opened."""

    async def _dial(ip, port, timeout):
        return HostStatus.CONNECTION_REFUSED

    monkeypatch.setattr("nsm.hosts.health.dial", _dial)
    return _dial
