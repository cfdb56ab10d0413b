"""
Bucket application lifecycle and component wiring.

Builds the single per-process DatabaseMonitor and hands it to everything that
records database metrics. Startup order:
1. Connect the file store
2. Run the first health probe and schedule the recurring ones
3. Start the health/metrics HTTP server

Shutdown runs the same steps in reverse.
"""
import asyncio
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from bucket import __version__
from bucket.core.config import ConfigManager
from bucket.core.lifecycle import BaseComponent, HealthCheckResult
from bucket.core.logging import ServerLogger, get_logger, setup_logging
from bucket.core.retry import OptionsLike, RetryOptions, with_retry
from bucket.services.db_monitor import DEFAULT_HEALTH_CHECK_INTERVAL_MS, DatabaseMonitor
from bucket.services.file_store import FileStore
from bucket.services.health import HealthServer, health_payload
from bucket.services.metrics import MetricsEmitter

T = TypeVar("T")


class BucketApp(BaseComponent):
    """Main Bucket application.

    Usage:
        app = BucketApp(Path("config/default.toml"))
        await app.start()
        record = await app.store.get_by_slug("abc12345")
        await app.stop()
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[ConfigManager] = None,
        serve_health: bool = True,
    ) -> None:
        """Initialize Bucket application.

        Args:
            config_path: Path to TOML configuration file
            config: Pre-built configuration (takes precedence over config_path)
            serve_health: Start the HTTP health server with the app
        """
        super().__init__(name="BucketApp")

        if config is None:
            if config_path is None:
                config_path = Path("config/default.toml")
                if not config_path.exists():
                    config_path = None
            config = ConfigManager(config_path)
        self._config = config

        setup_logging(
            level=self._config.get("bucket.log_level", "INFO"),
            json_output=self._config.get_bool("bucket.log_json", False),
            log_file=self._config.get("bucket.log_file"),
        )
        self._log = get_logger("app")
        db_logger = ServerLogger("bucket.db", debug_enabled=self._config.debug_enabled)

        self._metrics = MetricsEmitter()
        self._retry_options = RetryOptions.from_config(self._config)

        self._store = FileStore(
            config=self._config,
            metrics=self._metrics,
            retry_options=self._retry_options,
            logger=db_logger,
        )
        self._db_monitor = DatabaseMonitor(
            probe=self._store.ping,
            logger=db_logger,
            metrics=self._metrics,
            connection_count_provider=lambda: self._store.connection_count,
            default_interval_ms=self._config.get_int(
                "monitor.health_check_interval_ms", DEFAULT_HEALTH_CHECK_INTERVAL_MS
            ),
        )
        self._store.attach_monitor(self._db_monitor)

        self._health_server: Optional[HealthServer] = None
        if serve_health:
            self._health_server = HealthServer(
                self._db_monitor,
                metrics=self._metrics,
                port=self._config.get_int("health.port", 9090),
                host=self._config.get("health.host", "0.0.0.0"),
                logger=ServerLogger("bucket.health", debug_enabled=self._config.debug_enabled),
                uptime=lambda: self.uptime_seconds,
            )

        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def metrics(self) -> MetricsEmitter:
        return self._metrics

    @property
    def db_monitor(self) -> DatabaseMonitor:
        return self._db_monitor

    @property
    def store(self) -> FileStore:
        return self._store

    @property
    def retry_options(self) -> RetryOptions:
        return self._retry_options

    async def run_db(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        options: OptionsLike = None,
    ) -> T:
        """Run an ad-hoc database operation with the configured retry options."""
        return await with_retry(
            operation,
            operation_name,
            options if options is not None else self._retry_options,
            monitor=self._db_monitor,
        )

    async def _do_start(self) -> None:
        self._log.info("starting_bucket", version=__version__)

        await self._store.start()
        await self._db_monitor.start()
        if self._health_server:
            await self._health_server.start()

        self._log.info(
            "bucket_started",
            db_path=self._store.db_path,
            db_healthy=self._db_monitor.get_metrics().is_healthy,
        )

    async def _do_stop(self) -> None:
        self._log.info("stopping_bucket")

        if self._health_server:
            await self._health_server.stop()
        await self._db_monitor.stop()
        self._metrics.update_uptime(self.uptime_seconds)
        await self._store.stop()

        self._log.info("bucket_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        snapshot = self._db_monitor.get_metrics()
        if not snapshot.is_healthy:
            return HealthCheckResult.unhealthy(
                "Database unhealthy",
                uptime_seconds=self.uptime_seconds,
            )
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds)

    async def get_health_status(self) -> dict[str, Any]:
        """Health payload served on /health.

        Reads the monitor snapshot without probing; the recurring health
        check keeps it fresh.
        """
        return health_payload(self._db_monitor, self.uptime_seconds)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                self._log.warning("signal_handlers_unsupported", signal=sig.name)
                return
        self._log.info("signal_handlers_installed", signals=["SIGTERM", "SIGINT"])

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, ValueError):
                pass

    def _handle_signal(self, sig: signal.Signals) -> None:
        self._log.info("shutdown_signal_received", signal=sig.name)
        self.request_shutdown()

    async def run_forever(self) -> None:
        """Run until SIGTERM/SIGINT or request_shutdown()."""
        await self.start()
        self._install_signal_handlers()

        try:
            while not self._shutdown_event.is_set():
                self._metrics.update_uptime(self.uptime_seconds)
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._remove_signal_handlers()
            await self.stop()
