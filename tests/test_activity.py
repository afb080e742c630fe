"""Tests for the in-memory activity log and mDNS peer directory."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

from zeroconf import ServiceStateChange

from nsm.activity import ActivityLog
from nsm.discovery.mdns import MdnsService, Peer, PeerDirectory, peer_from_info


class TestActivityLog:
    def test_newest_first_and_bounded(self):
        log = ActivityLog(capacity=3)
        logger = logging.getLogger("nsm.test.activity")
        logger.addHandler(log)
        logger.setLevel(logging.INFO)
        try:
            for i in range(5):
                logger.info("event %d", i)
        finally:
            logger.removeHandler(log)

        assert len(log) == 3
        assert [e["text"] for e in log.entries()] == ["event 4", "event 3", "event 2"]
        assert [e["text"] for e in log.entries(limit=1)] == ["event 4"]

    def test_debug_filtered(self):
        log = ActivityLog()
        logger = logging.getLogger("nsm.test.debug")
        logger.addHandler(log)
        logger.setLevel(logging.DEBUG)
        try:
            logger.debug("noise")
        finally:
            logger.removeHandler(log)
        assert len(log) == 0

    def test_clear(self):
        log = ActivityLog()
        log.handle(logging.makeLogRecord({"msg": "x", "levelno": logging.INFO, "levelname": "INFO"}))
        log.clear()
        assert log.entries() == []


class TestPeerDirectory:
    def test_upsert_reports_new(self):
        directory = PeerDirectory()
        assert directory.upsert(Peer("a._nsm._tcp.local.", addresses=["10.0.0.1"], port=8080))
        assert not directory.upsert(Peer("a._nsm._tcp.local.", addresses=["10.0.0.2"], port=8080))
        assert directory.addresses() == ["10.0.0.2:8080"]

    def test_removed_event_drops_peer(self):
        directory = PeerDirectory()
        service = MdnsService(8080, "10.0.0.99", "node-local", "0.4.0", hostname="me", directory=directory)
        directory.upsert(Peer("other._nsm._tcp.local."))

        service._on_state_change(MagicMock(), "_nsm._tcp.local.", "other._nsm._tcp.local.", ServiceStateChange.Removed)

        assert len(directory) == 0

    def test_peer_from_info(self):
        info = MagicMock()
        info.properties = {b"id": b"peer-9", b"version": b"0.4.0", b"empty": None}
        info.server = "kiosk.local."
        info.port = 8080
        info.parsed_addresses.return_value = ["10.0.0.9"]

        peer = peer_from_info("kiosk._nsm._tcp.local.", info)

        assert peer.node_id == "peer-9"
        assert peer.hostname == "kiosk.local"
        assert peer.addresses == ["10.0.0.9"]
        assert peer.properties["empty"] == ""
        assert peer.to_dict()["port"] == 8080
