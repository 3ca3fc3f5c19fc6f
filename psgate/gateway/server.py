"""HTTP endpoints for health, metrics and threat statistics."""

from aiohttp import web
from loguru import logger

from psgate.exec.executor import CommandGateway


class MetricsServer:
    """
    HTTP API over a running gateway.

    Provides endpoints for:
    - Health check (GET /health)
    - Execution metrics (GET /api/metrics)
    - Unknown-command statistics (GET /api/threats)
    - Learned-pattern reload (POST /api/learned/reload)
    """

    def __init__(self, gateway: CommandGateway, host: str = "127.0.0.1", port: int = 9090):
        self.gateway = gateway
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/api/metrics", self._handle_metrics)
        app.router.add_get("/api/threats", self._handle_threats)
        app.router.add_post("/api/learned/reload", self._handle_reload_learned)
        return app

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.json_response(self.gateway.metrics.snapshot())

    async def _handle_threats(self, request: web.Request) -> web.Response:
        return web.json_response(self.gateway.tracker.stats())

    async def _handle_reload_learned(self, request: web.Request) -> web.Response:
        count = self.gateway.classifier.reload_learned_patterns()
        logger.info(f"Reloaded {count} learned safe pattern(s)")
        return web.json_response({"learnedPatterns": count})

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info(f"Metrics API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        logger.info("Metrics API stopped")
