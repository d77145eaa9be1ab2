# -*- coding: utf-8 -*-
"""
Simple HTTP healthcheck endpoint for monitoring.
Returns engine status, uptime, cycle counters and delivery counters.

The fallback failure counter is the operational health signal: any value
above zero means at least one alert was neither delivered nor saved locally.
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from aiohttp import web
from loguru import logger

from pricewatch.utils.timeutils import Clock, isoformat, seconds_between, utc_now


class HealthcheckServer:
    """Simple HTTP server for healthcheck endpoint."""

    def __init__(self, host: str = "0.0.0.0", port: int = 8080, clock: Clock = utc_now,
                 app_name: str = "PriceWatch"):
        self.host = host
        self.port = port
        self.clock = clock
        self.app_name = app_name
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

        # Engine status tracking
        self.start_time = clock()
        self.last_cycle_time: Optional[datetime] = None
        self.last_alert_time: Optional[datetime] = None
        self.cycles_completed = 0
        self.cycles_failed = 0
        self.triggers_total = 0
        self.fallback_failures = 0
        self.last_error: Optional[str] = None

        # Extra counters provider (e.g. dispatcher.snapshot)
        self.dispatch_stats: Optional[Callable[[], Dict[str, Any]]] = None

        self.app.router.add_get('/health', self.health_handler)
        self.app.router.add_get('/status', self.status_handler)
        self.app.router.add_get('/', self.index_handler)

    @property
    def healthy(self) -> bool:
        return self.fallback_failures == 0

    async def health_handler(self, request: web.Request) -> web.Response:
        """
        Simple health check endpoint.
        Returns 200 OK while no alert has been lost, 503 otherwise.
        """
        status = "ok" if self.healthy else "degraded"
        return web.json_response(
            {"status": status, "timestamp": isoformat(self.clock())},
            status=200 if self.healthy else 503,
        )

    async def status_handler(self, request: web.Request) -> web.Response:
        """Detailed status endpoint with engine metrics."""
        return web.json_response(self.status())

    async def index_handler(self, request: web.Request) -> web.Response:
        html = f"""
        <html>
        <head><title>{self.app_name} Healthcheck</title></head>
        <body>
            <h1>{self.app_name} Healthcheck</h1>
            <ul>
                <li><a href="/health">/health</a> - Simple health check</li>
                <li><a href="/status">/status</a> - Detailed engine status</li>
            </ul>
        </body>
        </html>
        """
        return web.Response(text=html, content_type='text/html')

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        uptime_seconds = seconds_between(self.start_time, now)

        days = int(uptime_seconds // 86400)
        hours = int((uptime_seconds % 86400) // 3600)
        minutes = int((uptime_seconds % 3600) // 60)

        data = {
            "status": "running" if self.healthy else "degraded",
            "uptime": f"{days}d {hours}h {minutes}m",
            "uptime_seconds": int(uptime_seconds),
            "start_time": isoformat(self.start_time),
            "cycles_completed": self.cycles_completed,
            "cycles_failed": self.cycles_failed,
            "last_cycle": isoformat(self.last_cycle_time) if self.last_cycle_time else None,
            "triggers_total": self.triggers_total,
            "last_alert": isoformat(self.last_alert_time) if self.last_alert_time else None,
            "fallback_failures": self.fallback_failures,
            "last_error": self.last_error,
            "timestamp": isoformat(now),
        }
        if self.dispatch_stats is not None:
            data["dispatch"] = self.dispatch_stats()
        return data

    def record_cycle(self, triggered: int) -> None:
        """Record a completed evaluation cycle."""
        now = self.clock()
        self.cycles_completed += 1
        self.last_cycle_time = now
        if triggered:
            self.triggers_total += triggered
            self.last_alert_time = now

    def record_cycle_failure(self, error: str) -> None:
        self.cycles_failed += 1
        self.last_error = error

    def record_fallback_failure(self, reason: str) -> None:
        self.fallback_failures += 1
        self.last_error = reason

    async def start(self):
        """Start the healthcheck server."""
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()
            self.site = web.TCPSite(self.runner, self.host, self.port)
            await self.site.start()
            logger.info(f"Healthcheck server started on http://{self.host}:{self.port}")
        except OSError as e:
            logger.error(f"Failed to start healthcheck server: {e}")

    async def stop(self):
        """Stop the healthcheck server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Healthcheck server stopped")

    async def run(self):
        """Run healthcheck server (keeps running until cancelled)."""
        await self.start()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            await self.stop()
            raise
