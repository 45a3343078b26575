"""
Service Commander — API Server
═══════════════════════════════════════════════════
FastAPI application: REST routes under /api, event WebSocket at /api/ws.

Startup: bind the WebSocket relay to the server loop, sweep expired backups.
Shutdown: cancel every health-monitor timer.

Run with:  service-commander   (or: uvicorn service_commander.app:app)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .commander import Commander, get_commander
from .config import ALLOW_ORIGINS, API_HOST, API_PORT, LOG_FORMAT, LOG_LEVEL
from .errors import CommanderError
from .routes import router
from .ws_stream import WebSocketHub

logger = logging.getLogger(__name__)


def create_app(commander: Optional[Commander] = None, sweep_on_start: bool = True) -> FastAPI:

    def current() -> Commander:
        return commander or get_commander()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cmd = current()
        hub = WebSocketHub(cmd.bus)
        hub.bind_loop(asyncio.get_running_loop())
        app.state.hub = hub

        if sweep_on_start:
            try:
                removed = await asyncio.to_thread(cmd.cleanup_backups)
                if removed:
                    logger.info(f"[Server] Removed {len(removed)} expired backup(s)")
            except (CommanderError, OSError) as e:
                logger.warning(f"[Server] Backup sweep failed: {e}")

        logger.info("[Server] Service Commander ready")
        yield

        hub.detach()
        cmd.shutdown()
        logger.info("[Server] Monitors stopped")

    app = FastAPI(title="Service Commander", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOW_ORIGINS,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router, prefix="/api")
    if commander is not None:
        app.dependency_overrides[get_commander] = current

    @app.get("/health")
    async def server_health():
        return {"status": "ok"}

    return app


app = create_app()


def main():
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    uvicorn.run(app, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    main()
