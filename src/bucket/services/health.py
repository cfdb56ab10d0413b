"""
HTTP health check endpoint for Bucket.

Serves the database monitor's snapshot on /health for container health checks
and uptime monitors, and the Prometheus registry on /metrics. Every request
gets a request id (echoed in the X-Request-Id header) and one API log line.

Response format:
{
    "status": "healthy" | "unhealthy",
    "database": {
        "is_healthy": bool,
        "latency_ms": float,
        "connection_count": int,
        "last_health_check": str,
        "error_count": int,
        "query_count": int,
        "slow_query_count": int
    },
    "monitoring": bool,
    "uptime_seconds": float,
    "checked_at": str
}

GET /health?refresh=true probes the database before answering instead of
reporting the last scheduled result.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from aiohttp import web

from bucket import __version__
from bucket.core.lifecycle import BaseComponent, HealthCheckResult
from bucket.core.logging import ServerLogger, generate_request_id
from bucket.services.db_monitor import DatabaseMonitor
from bucket.services.metrics import MetricsEmitter

REQUEST_ID_HEADER = "X-Request-Id"


def health_payload(monitor: DatabaseMonitor, uptime_seconds: float) -> dict[str, Any]:
    """Health document built from the monitor's current snapshot."""
    snapshot = monitor.get_metrics()
    return {
        "status": "healthy" if snapshot.is_healthy else "unhealthy",
        "database": snapshot.to_dict(),
        "monitoring": monitor.is_monitoring,
        "uptime_seconds": round(uptime_seconds, 3),
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }


class HealthServer(BaseComponent):
    """HTTP server for the database health and metrics endpoints.

    Usage:
        server = HealthServer(monitor, metrics=emitter, port=9090)
        await server.start()
        # Server runs on http://localhost:9090/health
        await server.stop()
    """

    def __init__(
        self,
        monitor: DatabaseMonitor,
        metrics: Optional[MetricsEmitter] = None,
        port: int = 9090,
        host: str = "0.0.0.0",
        logger: Optional[ServerLogger] = None,
        uptime: Optional[Callable[[], float]] = None,
    ) -> None:
        """Initialize the health server.

        Args:
            monitor: Database monitor whose snapshot is served.
            metrics: Emitter rendered on /metrics.
            port: Port to listen on.
            host: Host to bind to.
            logger: Logger for request and lifecycle events.
            uptime: Process uptime in seconds (defaults to the server's own).
        """
        super().__init__(name="HealthServer")
        self._monitor = monitor
        self._metrics = metrics
        self._port = port
        self._host = host
        self._log = logger or ServerLogger("bucket.health")
        self._uptime = uptime or (lambda: self.uptime_seconds)
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def port(self) -> int:
        return self._port

    def build_app(self) -> web.Application:
        """aiohttp application with request logging and the health routes."""

        @web.middleware
        async def request_logging(request: web.Request, handler: Any) -> web.StreamResponse:
            request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
            started = time.perf_counter()
            status = 500
            try:
                response = await handler(request)
                status = response.status
                response.headers[REQUEST_ID_HEADER] = request_id
                return response
            except web.HTTPException as e:
                status = e.status
                e.headers[REQUEST_ID_HEADER] = request_id
                raise
            finally:
                self._log.log_api_operation(
                    request.method,
                    request.path,
                    status,
                    (time.perf_counter() - started) * 1000.0,
                    {"request_id": request_id},
                )

        app = web.Application(middlewares=[request_logging])
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/", self._handle_root)
        return app

    async def _do_start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        self._log.info(
            "health_server_started",
            host=self._host,
            port=self._port,
            endpoints=["/health", "/metrics"],
        )

    async def _do_stop(self) -> None:
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._runner = None
        self._site = None
        self._log.info("health_server_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        if self._site is None:
            return HealthCheckResult.unhealthy("Server not running")
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds, port=self._port)

    async def _handle_root(self, request: web.Request) -> web.Response:
        return web.json_response({
            "service": "bucket",
            "version": __version__,
            "endpoints": ["/health", "/metrics"],
        })

    async def _handle_health(self, request: web.Request) -> web.Response:
        if request.query.get("refresh", "").lower() in ("1", "true", "yes"):
            await self._monitor.health_check()

        payload = health_payload(self._monitor, self._uptime())
        status_code = 200 if payload["status"] == "healthy" else 503
        return web.json_response(payload, status=status_code)

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        if self._metrics is None:
            return web.Response(
                text="# No metrics emitter configured\n",
                content_type="text/plain",
            )

        try:
            self._metrics.update_uptime(self._uptime())
            text = self._metrics.get_metrics()
        except Exception as e:
            self._log.error("Metrics rendering failed", e)
            return web.Response(
                text=f"# Error: {e}\n",
                content_type="text/plain",
                status=500,
            )
        return web.Response(text=text, content_type="text/plain")
