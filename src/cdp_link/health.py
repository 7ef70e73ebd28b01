"""FastAPI status surface reporting the DevTools connection."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from pydantic import BaseModel, ConfigDict, Field

from cdp_link.const import CDP_LINK_HOST, CDP_LINK_PORT, CDP_LINK_VERSION
from cdp_link.logging_abstraction import get_logger
from cdp_link.transport.connection_manager import ConnectionManager

logger = get_logger(__name__)

HEALTH_PATH = "/api/health"


class CdpStatus(BaseModel):
    """Connection section of the health payload."""

    model_config = ConfigDict(populate_by_name=True)

    connected: bool
    last_sync: int = Field(alias="lastSync")
    port: int | None


class HealthResponse(BaseModel):
    """Pydantic model for the health payload."""

    status: str
    timestamp: int
    cdp: CdpStatus
    uptime: float


def _to_millis(seconds: float) -> int:
    return int(seconds * 1000)


def build_health_payload(manager: ConnectionManager, started_at: float, now: float | None = None) -> dict[str, Any]:
    """Assemble the health body from the manager's synchronous accessors.

    Args:
        manager: Connection manager to report on
        started_at: Unix time the service started
        now: Unix time to report (defaults to time.time())

    Returns:
        ``{"status", "timestamp", "cdp": {"connected", "lastSync", "port"}, "uptime"}``
        with ``timestamp`` and ``lastSync`` in epoch milliseconds and ``uptime`` in seconds
    """
    if now is None:
        now = time.time()
    status = manager.status()
    return {
        "status": "ok",
        "timestamp": _to_millis(now),
        "cdp": {
            "connected": status.connected,
            "lastSync": _to_millis(status.last_sync),
            "port": status.port,
        },
        "uptime": max(0.0, now - started_at),
    }


def create_app(manager: ConnectionManager, started_at: float | None = None) -> FastAPI:
    """Build the FastAPI app; the manager is reachable as ``app.state.manager``."""
    app = FastAPI(title="cdp-link", version=CDP_LINK_VERSION)
    app.state.manager = manager
    app.state.started_at = time.time() if started_at is None else started_at

    @app.get(HEALTH_PATH, response_model=HealthResponse)
    async def health(request: Request) -> dict[str, Any]:
        """Report connection status without touching the network."""
        return build_health_payload(request.app.state.manager, request.app.state.started_at)

    return app


class HealthServer:
    """Manages the uvicorn server lifecycle for the health app."""

    lp = "HealthServer:"

    def __init__(
        self,
        manager: ConnectionManager,
        host: str = CDP_LINK_HOST,
        port: int = CDP_LINK_PORT,
    ) -> None:
        self.host = host
        self.port = port
        self.running: bool = False
        self.start_task: asyncio.Task[None] | None = None
        self.app = create_app(manager)
        self.uvi_server = uvicorn.Server(
            config=uvicorn.Config(
                self.app,
                host=host,
                port=port,
                log_config={
                    "version": 1,
                    "disable_existing_loggers": False,
                },
                log_level="info",
            )
        )

    async def start(self) -> None:
        """Serve until stopped."""
        lp = f"{self.lp}start:"
        logger.info("%s Starting health server on %s:%s", lp, self.host, self.port)
        self.running = True
        try:
            await self.uvi_server.serve()
        except asyncio.CancelledError:
            logger.info("%s Health server stopped", lp)
            raise
        except Exception:
            logger.exception("%s Error running health server", lp)
        else:
            logger.info("%s Health server lifecycle completed", lp)
        finally:
            self.running = False

    async def stop(self) -> None:
        """Ask uvicorn to exit and wait for the serve task."""
        lp = f"{self.lp}stop:"
        logger.info("%s Stopping health server...", lp)
        self.uvi_server.should_exit = True
        if self.start_task is not None and not self.start_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self.start_task), timeout=5.0)
            except TimeoutError:
                logger.warning("%s Health server did not exit in time, cancelling", lp)
                _ = self.start_task.cancel()
            except asyncio.CancelledError:
                logger.info("%s Health server shutdown cancelled", lp)
                raise
        self.running = False
