"""
Health Check HTTP Server.

Provides endpoints for liveness and readiness probes:
- /health/live - Returns 200 if process is running
- /health/ready - Returns 200 only when all components are healthy
- /health - Alias for /health/ready with detailed component status
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

logger = logging.getLogger("callbridge.health")


class HealthChecker:
    """
    Health check server for bridge components.

    Components register a check under a name (``ami``, ``database``,
    ``hub``); readiness fails when any of them reports unhealthy.
    """

    def __init__(self, port: int = 8080, host: str = "0.0.0.0"):
        self.port = port
        self.host = host
        self._checks: Dict[str, Callable[[], bool]] = {}
        self._async_checks: Dict[str, Callable[[], Awaitable[Any]]] = {}
        self._runner: Optional[web.AppRunner] = None
        self._started = False

    def register_check(self, name: str, check_fn: Callable[[], bool]) -> None:
        """Register a synchronous check returning True when healthy."""
        self._checks[name] = check_fn

    def register_async_check(self, name: str, check_fn: Callable[[], Awaitable[Any]]) -> None:
        """Register a coroutine check returning True when healthy."""
        self._async_checks[name] = check_fn

    async def check_all(self) -> Dict[str, bool]:
        """Run every registered check; a raising check counts as unhealthy."""
        results = {}

        for name, check_fn in self._checks.items():
            try:
                results[name] = bool(check_fn())
            except Exception as e:
                logger.warning(f"Health check '{name}' failed: {e}")
                results[name] = False

        for name, check_fn in self._async_checks.items():
            try:
                results[name] = bool(await check_fn())
            except Exception as e:
                logger.warning(f"Async health check '{name}' failed: {e}")
                results[name] = False

        return results

    async def _live_handler(self, request: web.Request) -> web.Response:
        return web.Response(text="OK", status=200)

    async def _ready_handler(self, request: web.Request) -> web.Response:
        results = await self.check_all()
        all_healthy = all(results.values()) if results else True

        return web.json_response(
            {
                "status": "healthy" if all_healthy else "unhealthy",
                "components": results,
            },
            status=200 if all_healthy else 503,
        )

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._ready_handler)
        app.router.add_get("/health/live", self._live_handler)
        app.router.add_get("/health/ready", self._ready_handler)
        return app

    async def start(self) -> None:
        """Start the health check HTTP server."""
        if self._started:
            return

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        self._started = True
        logger.info(f"Health check server started on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._started = False
        logger.info("Health check server stopped")
