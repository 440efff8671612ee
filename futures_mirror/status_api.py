"""Operational status endpoints for process supervision.

Exposes liveness of the listener and scanner units. This is not a query
surface over the mirrored bets.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from futures_mirror import __version__
from futures_mirror.config import settings
from futures_mirror.exceptions import StoreUnavailable
from futures_mirror.service import MirrorService

logger = logging.getLogger(__name__)


def create_app(service: MirrorService, manage_lifecycle: bool = True) -> FastAPI:
    """Build the status app around *service*.

    With *manage_lifecycle* the app's lifespan starts the service on startup
    and stops it on shutdown.
    """

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            try:
                service.start()
            except StoreUnavailable as exc:
                logger.error("Cannot start: %s", exc)
                service.record_failure("store", exc)
                raise
        try:
            yield
        finally:
            if manage_lifecycle:
                service.stop()
                service.close()

    app = FastAPI(
        title="Futures Mirror",
        description="Event mirror and settlement bot for the Futures contract",
        version=__version__,
        lifespan=_lifespan,
    )

    @app.get("/health")
    def health():
        listener_running = service.listener is not None and service.listener.running
        scanner_running = service.scanner is not None and service.scanner.running
        healthy = not service.failed and listener_running
        body = {
            "status": "ok" if healthy else "degraded",
            "service": "futures-mirror",
            "version": __version__,
            "contract": settings.contract_address,
            "listener_running": listener_running,
            "scanner_running": scanner_running,
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    @app.get("/status")
    def status():
        """Detailed state of both units."""
        return service.status()

    @app.get("/status/listener")
    def listener_status():
        return service.status()["listener"]

    @app.get("/status/scanner")
    def scanner_status():
        return service.status()["scanner"]

    return app
