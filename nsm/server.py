"""nsm — roster service entry point.

Start with::

    python -m nsm.server
    # or
    uvicorn --factory nsm.server:create_app --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from nsm import __version__
from nsm.activity import ActivityLog
from nsm.api import build_router
from nsm.config import NSMConfig
from nsm.discovery.mdns import MdnsService, PeerDirectory
from nsm.errors import (
    HostConflictError,
    InvalidAddressError,
    NotFoundError,
    NSMError,
    PeerUnreachableError,
    StoreIOError,
)
from nsm.fleet.sync import FleetCoordinator, LocalRegistrationLoop
from nsm.hosts.store import HostStore
from nsm.identity import LocalNode

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (NotFoundError, 404),
    (InvalidAddressError, 400),
    (HostConflictError, 409),
    (StoreIOError, 500),
    (PeerUnreachableError, 502),
    (NSMError, 500),
    (ValueError, 400),
]


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected (%d): %s", request.method, request.url.path, status_code, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


def create_app(
    config: NSMConfig | None = None,
    store: HostStore | None = None,
    node: LocalNode | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Wire store, coordinator and API into a FastAPI app."""
    if config is None:
        config = NSMConfig.from_env()
    if store is None:
        store = HostStore(config.db_path)
    if node is None:
        node = LocalNode(config)
    coordinator = FleetCoordinator(config, store, node, client=client)
    activity = ActivityLog(config.activity_log_size)
    peers = PeerDirectory()
    registration = LocalRegistrationLoop(coordinator, config.local_update_interval)
    mdns = MdnsService(
        port=config.port,
        ip=node.ip,
        node_id=node.id,
        version=node.version,
        hostname=node.hostname,
        service_name=config.mdns_service_name,
        directory=peers,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        activity.attach("nsm")
        logger.info("nsm %s starting (node %s, store %s)", __version__, node.id, store.path)
        await registration.start()
        if config.enable_mdns:
            await mdns.start()
        try:
            yield
        finally:
            await mdns.stop()
            await registration.stop()
            await coordinator.aclose()
            store.close()
            logger.info("nsm stopped")
            activity.detach("nsm")

    app = FastAPI(title="nsm", version=__version__, lifespan=lifespan)
    for exc_type, status_code in _STATUS_BY_ERROR:
        app.add_exception_handler(exc_type, _error_handler(status_code))
    app.include_router(build_router(coordinator, activity=activity, peers=peers))

    app.state.config = config
    app.state.store = store
    app.state.node = node
    app.state.coordinator = coordinator
    app.state.activity = activity
    app.state.peers = peers
    return app


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn

    config = NSMConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting nsm on 0.0.0.0:%d", config.port)
    uvicorn.run(create_app(config), host="0.0.0.0", port=config.port, reload=False)


if __name__ == "__main__":
    main()
