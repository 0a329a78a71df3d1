"""
botgate — FastAPI application factory.

Run with:
    python -m botgate --config config.json
or
    uvicorn botgate.main:create_app --factory --host 0.0.0.0 --port 8080
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from botgate.api.routes import status as status_router
from botgate.api.routes import websocket as websocket_router
from botgate.config import Settings, load_settings
from botgate.context import GatewayContext
from botgate.switchbot import BleakAdapter, BotRegistry

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

# Route → file inside the static directory
_PAGES: dict[str, str] = {
    "/gate": "gate.html",
    "/hud": "hud.html",
    "/favicon.ico": "favicon.ico",
    "/manifest.json": "manifest.json",
}


def _log_discovery_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("BLE discovery failed: %s", exc, exc_info=exc)


def _page(path: Path):
    async def page() -> FileResponse:
        return FileResponse(path)

    return page


def _mount_static(app: FastAPI, static_dir: str) -> None:
    directory = Path(static_dir)
    if not directory.is_dir():
        logger.info("Static directory %s not found, pages disabled", directory)
        return
    for route, filename in _PAGES.items():
        app.add_api_route(route, _page(directory / filename), include_in_schema=False)
    app.mount("/static", StaticFiles(directory=directory), name="static")


def create_app(settings: Settings | None = None, adapter: Any | None = None) -> FastAPI:
    """
    Build the application.

    ``adapter`` replaces the bleak adapter (tests pass an in-memory one).
    Configuration errors surface here, before the server starts listening.
    """
    if settings is None:
        settings = load_settings()
    if settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create the bots and start discovery on startup; close links on shutdown."""
        registry = BotRegistry.from_settings(settings, adapter or BleakAdapter())
        app.state.context = GatewayContext(settings=settings, registry=registry)

        await registry.enable()
        discovery_task = asyncio.create_task(registry.discover(), name="ble_discovery")
        discovery_task.add_done_callback(_log_discovery_result)
        logger.info("Server ready")
        try:
            yield
        finally:
            if not discovery_task.done():
                discovery_task.cancel()
                try:
                    await discovery_task
                except asyncio.CancelledError:
                    pass
            await registry.close()
            logger.info("Bots closed")

    app = FastAPI(
        title="botgate",
        description="Shared remote control for the gate and garage bots.",
        version="0.1.0",
        lifespan=lifespan,
    )

    # ── Routers ──────────────────────────────────────────────────────────────
    app.include_router(status_router.router, tags=["health"])
    app.include_router(websocket_router.router, tags=["websocket"])
    _mount_static(app, settings.server.static_dir)

    return app
