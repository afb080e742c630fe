"""nsm.fleet — roster gossip between peers.

Exports:
    FleetCoordinator      — push/receive, discovery resolution, self-registration
    LocalRegistrationLoop — periodic self-registration
    BackgroundTasks       — bounded fire-and-forget runner
"""

from __future__ import annotations

from nsm.fleet.sync import DiscoveryReport, FleetCoordinator, LocalRegistrationLoop, ReceiveReport
from nsm.fleet.tasks import BackgroundTasks

__all__ = [
    "BackgroundTasks",
    "DiscoveryReport",
    "FleetCoordinator",
    "LocalRegistrationLoop",
    "ReceiveReport",
]
