"""JSON HTTP API for the roster.

All routes live under ``/api`` and are built around one
:class:`~nsm.fleet.sync.FleetCoordinator`, passed in by the app factory.
Errors raised by the store and the coordinator are turned into status
codes by the handlers registered in :mod:`nsm.server`.

Roster
    GET    /api/hosts                  — full roster
    GET    /api/hosts/stream           — Server-Sent Events, roster on every change
    POST   /api/hosts/add              — add a host (probed once before storing)
    POST   /api/hosts/update           — inline edit
    POST   /api/hosts/delete?ip=       — delete (DELETE also accepted)
    POST   /api/hosts/set-primary?id=  — drop other records with the same hostname
    POST   /api/hosts/check            — probe every host (background)
    POST   /api/hosts/check-one?ip=    — probe one host (background)

Fleet
    POST   /api/discovery/scan         — scan the LAN (background, ?interface_ip=)
    GET    /api/discovery/status
    POST   /api/hosts/push             — gossip our roster to peers (background)
    POST   /api/hosts/receive?merge=   — accept a pushed roster
    POST   /api/hosts/announce         — accept one peer record
    GET    /api/peers                  — peers seen via mDNS

Backups
    POST   /api/hosts/export/internal  — timestamped backup of the store
    GET    /api/hosts/export/download  — roster as a JSON file
    GET    /api/hosts/export/snapshot  — database snapshot
    POST   /api/hosts/import/internal  — restore the newest backup
    POST   /api/hosts/import/upload    — replace roster from a JSON array
    POST   /api/hosts/import/snapshot  — install a database snapshot
    GET    /api/backups/list
    POST   /api/backups/restore?file=

Node
    GET    /api/host/local  /api/version  /api/health  /api/logs
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Body, HTTPException, Query, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from nsm.activity import ActivityLog
from nsm.discovery.mdns import PeerDirectory
from nsm.fleet.sync import FleetCoordinator
from nsm.hosts.models import Host, hosts_from_wire, hosts_to_wire
from nsm.hosts.store import HostStore

logger = logging.getLogger(__name__)

STREAM_KEEPALIVE = 30.0


# ── Request models ────────────────────────────────────────────────

class AddHostRequest(BaseModel):
    nickname: str = ""
    ip_address: str = ""
    vpn_ip_address: str = ""
    notes: str = ""


class UpdateHostRequest(BaseModel):
    id: str = ""
    old_ip: str = ""
    nickname: str = ""
    ip_address: str = ""
    vpn_ip_address: str = ""
    notes: str = ""


class PushRequest(BaseModel):
    targets: list[str] = Field(default_factory=list)
    merge: bool = False


# ── Helpers ───────────────────────────────────────────────────────

def _decode_hosts(payload: Any) -> list[Host]:
    try:
        return hosts_from_wire(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _sse(data: Any) -> str:
    return f"data: {json.dumps(data)}\n\n"


async def roster_events(
    store: HostStore, keepalive: float = STREAM_KEEPALIVE
) -> AsyncGenerator[str, None]:
    """The roster now, then again after every change, with keep-alive comments."""
    sub = store.updates()
    try:
        yield _sse(hosts_to_wire(store.get_all()))
        while True:
            try:
                await asyncio.wait_for(sub.next(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield _sse(hosts_to_wire(store.get_all()))
    finally:
        sub.close()


# ── Router ────────────────────────────────────────────────────────

def build_router(
    coordinator: FleetCoordinator,
    activity: ActivityLog | None = None,
    peers: PeerDirectory | None = None,
) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["nsm"])
    store = coordinator.store
    config = coordinator.config

    # ══════════════════════════════════════════════════════════════
    # ROSTER
    # ══════════════════════════════════════════════════════════════

    @router.get("/hosts")
    async def list_hosts():
        return hosts_to_wire(store.get_all())

    @router.get("/hosts/stream")
    async def stream_hosts():
        return StreamingResponse(roster_events(store), media_type="text/event-stream")

    @router.post("/hosts/add", status_code=201)
    async def add_host(req: AddHostRequest):
        host = await coordinator.add_host(
            ip_address=req.ip_address,
            vpn_ip_address=req.vpn_ip_address,
            nickname=req.nickname,
            notes=req.notes,
        )
        return host.to_dict()

    @router.post("/hosts/update")
    async def update_host(req: UpdateHostRequest):
        if not req.id and not (req.old_ip or req.ip_address):
            raise HTTPException(status_code=400, detail="id or old_ip is required")
        host = coordinator.update_host(
            old_ip=req.old_ip,
            ip_address=req.ip_address,
            vpn_ip_address=req.vpn_ip_address,
            nickname=req.nickname,
            notes=req.notes,
            host_id=req.id,
        )
        return host.to_dict()

    @router.api_route("/hosts/delete", methods=["POST", "DELETE"], status_code=204)
    async def delete_host(ip: str = Query("")):
        if not ip:
            raise HTTPException(status_code=400, detail="Missing 'ip' query parameter")
        coordinator.delete_host(ip)
        return Response(status_code=204)

    @router.post("/hosts/set-primary")
    async def set_primary(id: str = Query("")):
        if not id:
            raise HTTPException(status_code=400, detail="Missing 'id' query parameter")
        return {"removed": coordinator.set_primary(id)}

    @router.post("/hosts/check", status_code=202)
    async def check_hosts():
        coordinator.launch_check_all()
        return {"status": "started"}

    @router.post("/hosts/check-one", status_code=202)
    async def check_host(ip: str = Query("")):
        if not ip:
            raise HTTPException(status_code=400, detail="Missing 'ip' query parameter")
        coordinator.launch_check_one(ip)
        return {"status": "started", "ip": ip}

    # ══════════════════════════════════════════════════════════════
    # FLEET
    # ══════════════════════════════════════════════════════════════

    @router.post("/discovery/scan", status_code=202)
    async def discovery_scan(interface_ip: str = Query("")):
        started = coordinator.start_discovery(interface_ip.strip() or None)
        return {"status": "started" if started else "already_running"}

    @router.get("/discovery/status")
    async def discovery_status():
        last = coordinator.last_discovery
        return {
            "running": coordinator.discovery_running,
            "last": None if last is None else {
                "found": last.found,
                "created": last.created,
                "updated": last.updated,
                "evicted": last.evicted,
                "failed": last.failed,
            },
        }

    @router.post("/hosts/push", status_code=202)
    async def push_hosts(req: PushRequest | None = None):
        if req is None:
            req = PushRequest()
        targets = coordinator.launch_push(req.targets or None, merge=req.merge)
        return {"status": "started", "targets": targets}

    @router.post("/hosts/receive")
    async def receive_hosts(payload: Any = Body(...), merge: bool = Query(False)):
        hosts = _decode_hosts(payload)
        return coordinator.receive(hosts, merge=merge).to_dict()

    @router.post("/hosts/announce", status_code=204)
    async def announce_host(payload: dict[str, Any] = Body(...)):
        coordinator.announce(Host.from_dict(payload))
        return Response(status_code=204)

    @router.get("/peers")
    async def list_peers():
        if peers is None:
            return []
        return [p.to_dict() for p in peers.list()]

    # ══════════════════════════════════════════════════════════════
    # BACKUPS
    # ══════════════════════════════════════════════════════════════

    @router.post("/hosts/export/internal")
    async def export_internal():
        path = store.backup_current(config.export_max_backups)
        logger.info("Created internal backup at: %s", path)
        return {"status": "ok", "path": str(path) if path else ""}

    @router.get("/hosts/export/download")
    async def export_download():
        body = json.dumps(hosts_to_wire(store.get_all()), indent=2)
        filename = f"nsm-hosts-{datetime.now(timezone.utc):%Y-%m-%d}.json"
        logger.info("Served host list download: %s", filename)
        return Response(
            content=body,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @router.get("/hosts/export/snapshot")
    async def export_snapshot():
        data = store.export_snapshot()
        filename = f"nsm-hosts-{datetime.now(timezone.utc):%Y-%m-%d}.db"
        return Response(
            content=data,
            media_type="application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @router.api_route("/hosts/import/internal", methods=["GET", "POST"])
    async def import_internal():
        latest = store.restore_latest(config.max_backups)
        logger.info("Restored host list from %s", latest.filename)
        return {"status": "ok", "source": latest.filename}

    @router.post("/hosts/import/upload")
    async def import_upload(payload: Any = Body(...)):
        hosts = _decode_hosts(payload)
        for host in hosts:
            host.validate()
        store.backup_current(config.replace_max_backups)
        store.replace_all(hosts)
        logger.info("Imported %d hosts from upload", len(hosts))
        return {"status": "ok", "imported": len(hosts)}

    @router.post("/hosts/import/snapshot")
    async def import_snapshot(request: Request):
        data = await request.body()
        backup = store.import_snapshot(data, config.max_backups)
        return {"status": "ok", "backup": str(backup) if backup else ""}

    @router.get("/backups/list")
    async def list_backups():
        return [b.to_dict() for b in store.list_backups()]

    @router.post("/backups/restore", status_code=204)
    async def restore_backup(file: str = Query("")):
        filename = os.path.basename(file.strip())
        if not filename:
            raise HTTPException(status_code=400, detail="Missing 'file' parameter")
        store.restore_from(filename, config.max_backups)
        logger.info("Restored backup: %s", filename)
        return Response(status_code=204)

    # ══════════════════════════════════════════════════════════════
    # NODE
    # ══════════════════════════════════════════════════════════════

    @router.get("/host/local")
    async def local_host():
        return coordinator.local_description().to_dict()

    @router.get("/version")
    async def version():
        return coordinator.node.version_info()

    @router.get("/health")
    async def health():
        return {"status": "ok"}

    @router.get("/logs")
    async def logs(limit: int = Query(0, ge=0)):
        if activity is None:
            return []
        return activity.entries(limit or None)

    return router
