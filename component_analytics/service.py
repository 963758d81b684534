"""
Analytics service that wires the pipeline together and owns its lifecycle.

Producers -> collector -> store -> aggregator -> alert evaluator -> notifications,
with the live stream tapping the collector's committed writes.
"""

import asyncio
import logging
import signal
from typing import Any, Dict, Optional

import uvicorn

from component_analytics.aggregation import AggregationScheduler, Aggregator
from component_analytics.alerts import AlertEvaluator, EvaluationScheduler, NotificationDispatcher
from component_analytics.collector import TelemetryCollector
from component_analytics.config import AnalyticsConfig
from component_analytics.exceptions import StoreUnavailableError
from component_analytics.grouping import ErrorGrouper
from component_analytics.live_stream import LiveStream
from component_analytics.protocols import EmailSender, EventStore
from component_analytics.queries import AnalyticsQueries
from component_analytics.storage import PostgresEventStore, create_store

logger = logging.getLogger(__name__)


class AnalyticsService:
    """
    Main analytics service.

    This service:
    - Creates the event store (PostgreSQL or in-memory)
    - Runs the collector's flush task
    - Schedules hourly/daily aggregation and baseline refresh
    - Schedules alert evaluation and auto-resolution
    - Exposes query interfaces for the HTTP API
    """

    def __init__(
        self,
        config: Optional[AnalyticsConfig] = None,
        store: Optional[EventStore] = None,
        email_sender: Optional[EmailSender] = None,
    ):
        """
        Initialize analytics service.

        Args:
            config: Service configuration (defaults plus environment overrides when None)
            store: Pre-built event store (created from config when None)
            email_sender: Email transport for alert notifications
        """
        self.config = config or AnalyticsConfig.from_env()
        self.store: EventStore = store or create_store(self.config.database)

        self.live_stream = LiveStream()
        self.grouper = ErrorGrouper(self.store)
        self.collector = TelemetryCollector.from_config(
            self.store, self.config.collector, grouper=self.grouper, publisher=self.live_stream
        )
        self.aggregator = Aggregator.from_config(self.store, self.config.aggregation)
        self.aggregation_scheduler = AggregationScheduler(self.aggregator, self.config.aggregation)
        self.dispatcher = NotificationDispatcher(
            email_sender=email_sender,
            webhook_timeout=self.config.alerts.webhook_timeout_seconds,
        )
        self.evaluator = AlertEvaluator(self.store, self.dispatcher)
        self.evaluation_scheduler = EvaluationScheduler(self.evaluator, self.config.alerts)
        self.queries = AnalyticsQueries(self.store)

        self._initialized = False
        self._running = False
        self._shutdown_event: Optional[asyncio.Event] = None

    async def initialize(self) -> None:
        """Connect the store and ensure its schema. Failures degrade to retry-on-write."""
        if self._initialized:
            return

        if isinstance(self.store, PostgresEventStore):
            try:
                await self.store.connect()
                await self.store.create_schema()
            except StoreUnavailableError as e:
                logger.error(f"Event store unavailable at startup: {e}")
                logger.warning("Continuing; buffered writes will retry until the store recovers")

        self._initialized = True
        logger.info(f"Analytics service initialized (store={type(self.store).__name__})")

    async def start(self) -> None:
        """Start the collector and all periodic jobs."""
        if self._running:
            logger.warning("Analytics service already running")
            return

        await self.initialize()
        self._shutdown_event = asyncio.Event()
        await self.collector.start()
        await self.aggregation_scheduler.start()
        await self.evaluation_scheduler.start()
        self._running = True
        logger.info("Analytics service started")

    async def stop(self) -> None:
        """Stop periodic jobs, flush the collector, and release the store."""
        if not self._running:
            return

        logger.info("Stopping analytics service")
        await self.evaluation_scheduler.stop()
        await self.aggregation_scheduler.stop()
        await self.collector.stop()

        if isinstance(self.store, PostgresEventStore):
            await self.store.disconnect()

        self._running = False
        if self._shutdown_event:
            self._shutdown_event.set()
        logger.info("Analytics service stopped")

    def request_shutdown(self) -> None:
        """Signal-safe shutdown trigger."""
        if self._shutdown_event:
            self._shutdown_event.set()

    async def run(self) -> None:
        """
        Run until SIGTERM/SIGINT, serving the HTTP API when enabled.

        uvicorn installs its own signal handlers while serving, so shutdown
        follows the server's exit in that mode.
        """
        await self.start()
        try:
            if self.config.api.enabled:
                await self._serve_api()
            else:
                self._register_signal_handlers()
                await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def _serve_api(self) -> None:
        # api imports this module for its type hints
        from component_analytics.api import create_app

        server = uvicorn.Server(
            uvicorn.Config(
                create_app(self),
                host=self.config.api.host,
                port=self.config.api.port,
                log_config=None,
            )
        )
        logger.info(f"Serving analytics API on {self.config.api.host}:{self.config.api.port}")
        await server.serve()

    def _register_signal_handlers(self) -> None:
        """Register signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

    @property
    def is_running(self) -> bool:
        return self._running

    async def get_status(self) -> Dict[str, Any]:
        """Pipeline status for health endpoints and the CLI."""
        return {
            "running": self._running,
            "store": type(self.store).__name__,
            "store_healthy": await self.store.is_healthy(),
            "collector": self.collector.get_stats().model_dump(),
            "tasks": [
                stats.model_dump()
                for stats in self.aggregation_scheduler.get_stats()
                + [self.evaluation_scheduler.get_stats()]
            ],
            "live_subscribers": self.live_stream.subscriber_count,
        }
