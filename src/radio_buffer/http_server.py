"""HTTP health endpoint and manual rebuild trigger.

Routes:
- GET /, GET /health: health report as JSON (200 healthy/degraded, 503 unhealthy)
- POST /rebuild: start a rebuild (202 started, 409 already running)
"""

from __future__ import annotations

import json
from functools import partial
from typing import TYPE_CHECKING

import structlog
from aiohttp import web

from radio_buffer import logging as console
from radio_buffer.telemetry import Telemetry, get_telemetry

if TYPE_CHECKING:
    from radio_buffer.health import HealthMonitor
    from radio_buffer.scheduler import RebuildScheduler

log = structlog.get_logger()

_dumps = partial(json.dumps, indent=2)


class HealthServer:
    """aiohttp server exposing the health report."""

    def __init__(
        self,
        monitor: HealthMonitor,
        scheduler: RebuildScheduler,
        host: str = "0.0.0.0",
        port: int = 3000,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.monitor = monitor
        self.scheduler = scheduler
        self.host = host
        self.port = port
        self.telemetry = telemetry or get_telemetry()
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self.handle_health)
        app.router.add_get("/health", self.handle_health)
        app.router.add_post("/rebuild", self.handle_rebuild)
        return app

    async def handle_health(self, request: web.Request) -> web.Response:
        try:
            report = self.monitor.snapshot()
        except Exception as e:
            self.telemetry.capture_exception(
                e, tags={"component": "health", "event": "handler_error"}
            )
            log.error("health_handler_failed", error=str(e))
            return web.json_response(
                {"status": "unhealthy", "error": str(e)}, status=503, dumps=_dumps
            )
        return web.json_response(report.to_dict(), status=report.http_status, dumps=_dumps)

    async def handle_rebuild(self, request: web.Request) -> web.Response:
        if self.scheduler.rebuild_now():
            log.info("manual_rebuild_started", remote=request.remote)
            return web.json_response({"status": "started"}, status=202)
        return web.json_response({"status": "already running"}, status=409)

    async def start(self) -> None:
        """Start listening. No-op if already started."""
        if self._runner is not None:
            return
        self._runner = web.AppRunner(self.create_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("health_server_started", host=self.host, port=self.port)
        console.health_listening(self.host, self.port)

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        log.info("health_server_stopped")
