"""Error taxonomy shared by the store, the prober and the fleet coordinator."""

from __future__ import annotations


class NSMError(Exception):
    """Base error for roster operations."""


class NotFoundError(NSMError):
    """No host matches the requested id or IP address."""


class InvalidAddressError(NSMError, ValueError):
    """An address is not a syntactically valid IPv4 address."""

    def __init__(self, address: str, field: str = "ip_address") -> None:
        self.address = address
        self.field = field
        super().__init__(f"{field} must be a valid IPv4 address, got {address!r}")


class HostConflictError(NSMError):
    """A write would give two hosts the same id or the same IP address."""


class StoreCorruptError(NSMError):
    """The store file failed its integrity probe. Only raised during recovery."""


class StoreIOError(NSMError):
    """The store could not persist a mutation."""


class PeerUnreachableError(NSMError):
    """A remote peer could not be reached or answered with an error."""

    def __init__(self, peer: str, reason: str = "") -> None:
        self.peer = peer
        self.reason = reason
        super().__init__(f"peer {peer} unreachable: {reason}" if reason else f"peer {peer} unreachable")


class BackupUnavailableError(NotFoundError):
    """No usable backup exists."""
