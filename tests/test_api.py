"""Tests for the HTTP API — routes, status codes and the roster stream."""

from __future__ import annotations

import logging

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from nsm.api import roster_events
from nsm.hosts.models import Host
from nsm.server import create_app


@pytest.fixture
def peer_transport():
    return httpx.MockTransport(lambda request: httpx.Response(404))


@pytest.fixture
def app(config, store, node, peer_transport, refuse_dial):
    return create_app(config, store=store, node=node, client=httpx.AsyncClient(transport=peer_transport))


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await app.state.coordinator.aclose()


class TestRoster:
    async def test_empty_roster(self, client):
        resp = await client.get("/api/hosts")
        assert resp.status_code == 200
        assert resp.json() == []

    async def test_add_and_list(self, client):
        resp = await client.post("/api/hosts/add", json={"ip_address": "10.0.0.5", "nickname": "Lobby"})
        assert resp.status_code == 201
        assert resp.json()["status"] == "Connection Refused"

        hosts = (await client.get("/api/hosts")).json()
        assert [h["nickname"] for h in hosts] == ["Lobby"]

    async def test_add_invalid_address(self, client):
        resp = await client.post("/api/hosts/add", json={"ip_address": "10.0.0"})
        assert resp.status_code == 400
        assert "IPv4" in resp.json()["detail"]

    async def test_add_without_address(self, client):
        resp = await client.post("/api/hosts/add", json={"nickname": "x"})
        assert resp.status_code == 400

    async def test_delete(self, client, store):
        store.add(Host(ip_address="10.0.0.5"))
        resp = await client.post("/api/hosts/delete", params={"ip": "10.0.0.5"})
        assert resp.status_code == 204
        assert store.get_all() == []

    async def test_delete_verb_and_missing(self, client):
        assert (await client.delete("/api/hosts/delete", params={"ip": "10.0.0.5"})).status_code == 404
        assert (await client.post("/api/hosts/delete")).status_code == 400

    async def test_update_conflict(self, client, store):
        store.add(Host(ip_address="10.0.0.1", id="a"))
        store.add(Host(ip_address="10.0.0.2", id="b"))
        resp = await client.post("/api/hosts/update", json={"id": "b", "ip_address": "10.0.0.1"})
        assert resp.status_code == 409

    async def test_update_requires_key(self, client):
        resp = await client.post("/api/hosts/update", json={"nickname": "x"})
        assert resp.status_code == 400

    async def test_update_edits_nickname(self, client, app, store):
        store.add(Host(ip_address="10.0.0.1", id="a"))
        resp = await client.post(
            "/api/hosts/update",
            json={"old_ip": "10.0.0.1", "ip_address": "10.0.0.1", "nickname": "Renamed"},
        )
        assert resp.status_code == 200
        assert resp.json()["nickname"] == "Renamed"
        await app.state.coordinator.tasks.drain(timeout=2.0)

    async def test_set_primary(self, client, store):
        store.add(Host(ip_address="10.0.0.1", id="a", hostname="pi"))
        store.add(Host(ip_address="10.0.0.2", id="b", hostname="pi"))
        resp = await client.post("/api/hosts/set-primary", params={"id": "a"})
        assert resp.json() == {"removed": 1}
        assert (await client.post("/api/hosts/set-primary", params={"id": "zz"})).status_code == 404

    async def test_check_one_missing(self, client):
        resp = await client.post("/api/hosts/check-one", params={"ip": "10.0.0.5"})
        assert resp.status_code == 404

    async def test_check_all_accepted(self, client, app):
        resp = await client.post("/api/hosts/check")
        assert resp.status_code == 202
        await app.state.coordinator.tasks.drain(timeout=2.0)


class TestGossip:
    async def test_receive_replace(self, client, store):
        store.add(Host(ip_address="10.0.0.9", id="z"))
        payload = [{"ip_address": "10.0.0.1", "id": "a"}, {"ip_address": "10.0.0.2", "id": "b"}]
        resp = await client.post("/api/hosts/receive", json=payload)
        assert resp.status_code == 200
        assert resp.json()["mode"] == "replace"
        assert [h.id for h in store.get_all()] == ["a", "b"]

    async def test_receive_merge(self, client, store):
        store.add(Host(ip_address="10.0.0.9", id="z"))
        resp = await client.post(
            "/api/hosts/receive", params={"merge": "true"}, json=[{"ip_address": "10.0.0.1", "id": "a"}]
        )
        body = resp.json()
        assert body["mode"] == "merge"
        assert body["applied"] == 1
        assert {h.id for h in store.get_all()} == {"a", "z"}

    async def test_receive_rejects_non_list(self, client):
        resp = await client.post("/api/hosts/receive", json={"ip_address": "10.0.0.1"})
        assert resp.status_code == 400

    async def test_receive_rejects_bad_address(self, client, store):
        store.add(Host(ip_address="10.0.0.9", id="z"))
        resp = await client.post("/api/hosts/receive", json=[{"ip_address": "999.0.0.1"}])
        assert resp.status_code == 400
        assert [h.id for h in store.get_all()] == ["z"]

    async def test_announce(self, client, store):
        resp = await client.post("/api/hosts/announce", json={"id": "p", "ip_address": "10.0.0.4"})
        assert resp.status_code == 204
        assert store.get_by_id("p").ip_address == "10.0.0.4"
        bad = await client.post("/api/hosts/announce", json={"ip_address": "10.0.0.4"})
        assert bad.status_code == 400

    async def test_push_accepted(self, client, app, store):
        store.add(Host(ip_address="10.0.0.1", id="a"))
        resp = await client.post("/api/hosts/push", json={"merge": True})
        assert resp.status_code == 202
        assert resp.json()["targets"] == ["10.0.0.1"]
        await app.state.coordinator.tasks.drain(timeout=2.0)

    async def test_discovery_bad_interface(self, client):
        resp = await client.post("/api/discovery/scan", params={"interface_ip": "10.0.0.999"})
        assert resp.status_code == 400

    async def test_discovery_status_idle(self, client):
        resp = await client.get("/api/discovery/status")
        assert resp.json() == {"running": False, "last": None}

    async def test_peers_empty(self, client):
        assert (await client.get("/api/peers")).json() == []


class TestBackups:
    async def test_export_list_restore(self, client, store):
        store.add(Host(ip_address="10.0.0.1", id="a"))
        resp = await client.post("/api/hosts/export/internal")
        assert resp.status_code == 200
        store.add(Host(ip_address="10.0.0.2", id="b"))

        backups = (await client.get("/api/backups/list")).json()
        assert len(backups) == 1

        resp = await client.post("/api/backups/restore", params={"file": backups[0]["filename"]})
        assert resp.status_code == 204
        assert [h.id for h in store.get_all()] == ["a"]

    async def test_restore_missing_backup(self, client):
        resp = await client.post("/api/backups/restore", params={"file": "../hosts-1.db"})
        assert resp.status_code == 404

    async def test_import_internal_without_backups(self, client):
        assert (await client.post("/api/hosts/import/internal")).status_code == 404

    async def test_import_upload_replaces_roster(self, client, store):
        store.add(Host(ip_address="10.0.0.9", id="z"))
        resp = await client.post("/api/hosts/import/upload", json=[{"ip_address": "10.0.0.1", "id": "a"}])
        assert resp.json() == {"status": "ok", "imported": 1}
        assert [h.id for h in store.get_all()] == ["a"]
        assert len(store.list_backups()) == 1

    async def test_download(self, client, store):
        store.add(Host(ip_address="10.0.0.1", id="a"))
        resp = await client.get("/api/hosts/export/download")
        assert "attachment" in resp.headers["content-disposition"]
        assert resp.json()[0]["id"] == "a"

    async def test_snapshot_round_trip(self, client, store):
        store.add(Host(ip_address="10.0.0.1", id="a"))
        snapshot = (await client.get("/api/hosts/export/snapshot")).content
        store.delete("10.0.0.1")

        resp = await client.post("/api/hosts/import/snapshot", content=snapshot)
        assert resp.status_code == 200
        assert [h.id for h in store.get_all()] == ["a"]

    async def test_snapshot_garbage_rejected(self, client):
        resp = await client.post("/api/hosts/import/snapshot", content=b"not a database" * 20)
        assert resp.status_code == 400


class TestNode:
    async def test_version(self, client):
        body = (await client.get("/api/version")).json()
        assert body["id"] == "node-local"
        assert body["hostname"] == "nsm-test"
        assert body["version"]

    async def test_host_local(self, client):
        body = (await client.get("/api/host/local")).json()
        assert body["id"] == "node-local"
        assert body["ip_address"] == "10.0.0.99"

    async def test_health(self, client):
        assert (await client.get("/api/health")).json() == {"status": "ok"}

    async def test_logs(self, client, app):
        activity = app.state.activity.attach("nsm")
        try:
            logging.getLogger("nsm.test").warning("probe sweep finished")
            entries = (await client.get("/api/logs", params={"limit": 5})).json()
        finally:
            activity.detach("nsm")
        assert entries[0]["text"] == "probe sweep finished"
        assert entries[0]["level"] == "WARNING"


class TestRosterStream:
    async def test_initial_keepalive_and_change(self, store):
        events = roster_events(store, keepalive=0.05)
        try:
            first = await events.__anext__()
            assert first == "data: []\n\n"

            assert (await events.__anext__()).startswith(": keep-alive")

            store.add(Host(ip_address="10.0.0.1", id="a"))
            update = await events.__anext__()
            assert update.startswith("data: ")
            assert '"10.0.0.1"' in update
        finally:
            await events.aclose()


class TestAppFactory:
    async def test_empty_store_is_used_as_given(self, config, store, node):
        assert len(store) == 0
        app = create_app(config, store=store, node=node)
        try:
            assert app.state.store is store
            assert app.state.coordinator.store is store
        finally:
            await app.state.coordinator.aclose()
