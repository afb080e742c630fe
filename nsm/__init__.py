"""nexSign mini — fleet roster for Anthias signage hosts.

Each instance keeps its own roster of hosts, probes their health, scans the
local network for other instances and gossips roster changes to its peers.
There is no coordinator: every peer trusts what it receives.

Quickstart::

    from nsm.config import NSMConfig
    from nsm.server import create_app

    app = create_app(NSMConfig.from_env())
"""

__version__ = "0.4.0"
