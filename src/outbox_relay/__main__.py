"""
Outbox relay service.

Runs the outbox runner as a long-lived process with graceful shutdown.

Usage:
    python -m outbox_relay

Environment Variables:
    MONGO_URL: MongoDB connection string (replica set required)
    MONGO_NAMESPACE_FILTER: Collection name to relay (default: outbox)
    CHECKPOINT_BACKEND: memory, file or sql (default: file)
    CHECKPOINT_FILE_PATH: Token file (default: outbox_token.json)
    CHECKPOINT_DATABASE_URL: SQLAlchemy URL for the sql backend
    OUTBOX_RESTART_DELAY: Seconds between restarts (default: 1.0)
    OUTBOX_LOG_LEVEL: Logging level (default: INFO)
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from .connectors.cdc import (
    ClientConfig,
    FileCheckpointStore,
    LoggingPublisher,
    MemoryCheckpointStore,
    MongoChangeFeedSource,
    OutboxRunner,
    RunnerConfig,
    RunnerEvent,
    SqlCheckpointStore,
    WatchConfig,
)
from .settings import CheckpointSettings, Settings, get_settings
from .utils.logging import configure_logging

logger = logging.getLogger("outbox_relay")


def build_checkpoint_store(settings: CheckpointSettings, collection: str = "*"):
    """Create the checkpoint store selected by ``settings.backend``."""
    if settings.backend == "memory":
        return MemoryCheckpointStore()
    if settings.backend == "sql":
        if not settings.database_url:
            raise ValueError("CHECKPOINT_DATABASE_URL is required for the sql backend")
        return SqlCheckpointStore(settings.database_url, job_id=settings.job_id, collection=collection)
    return FileCheckpointStore(settings.file_path)


def build_runner(settings: Settings) -> OutboxRunner:
    """Wire a runner from settings and log every lifecycle event."""
    mongo = settings.mongo
    config = RunnerConfig(
        client=ClientConfig(url=mongo.url, options=mongo.client_options()),
        watch=WatchConfig(filter=mongo.watch_filter(), options=mongo.watch_options()),
        storage=build_checkpoint_store(settings.checkpoint, mongo.collection or mongo.namespace_filter or "*"),
        publisher=LoggingPublisher(),
        restart_delay=settings.runner.restart_delay,
    )
    source = MongoChangeFeedSource(
        mongo.url,
        database=mongo.database,
        collection=mongo.collection,
        client_options=config.client.options,
    )
    runner = OutboxRunner(config, source=source)

    runner.on(RunnerEvent.ERROR, lambda err: logger.error(f"Runner error: {err}"))
    runner.on(RunnerEvent.CLOSE, lambda: logger.info("MongoDB is closed"))
    runner.on(RunnerEvent.CONNECTED, lambda: logger.debug("MongoDB connection ready"))
    runner.on(
        RunnerEvent.RUNNING,
        lambda pipeline, options: logger.info(
            "Starting change stream", extra={"pipeline": pipeline, "options": options}
        ),
    )
    runner.on(RunnerEvent.RESTARTING, lambda: logger.info("Change stream is restarting"))
    runner.on(RunnerEvent.CHANGE, lambda event: logger.debug(f"Change {event.token}"))
    runner.on(RunnerEvent.COMMITTED, lambda token: logger.debug(f"Committed token {token}"))
    return runner


class RelayService:
    """
    Manages the outbox runner lifecycle with graceful shutdown.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.runner: Optional[OutboxRunner] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self) -> None:
        """Ask run() to stop the runner and return."""
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self):
        """Run the relay until shutdown is requested."""
        logger.info(
            "Starting outbox relay",
            extra={
                "checkpoint_backend": self.settings.checkpoint.backend,
                "restart_delay": self.settings.runner.restart_delay,
            },
        )
        self._setup_signal_handlers()
        self.runner = build_runner(self.settings)

        try:
            await self.runner.start()
            logger.info("Outbox relay is running")
            await self._shutdown_event.wait()
        finally:
            logger.info("Stopping outbox relay")
            await self.runner.stop()
            logger.info("Outbox relay stopped")

    def health_check(self) -> dict:
        """Return health status for monitoring."""
        status = self.runner.health() if self.runner else None
        return {
            "status": "healthy" if status and status["stream"] == "running" else "unhealthy",
            "runner": status,
            "shutdown_requested": self._shutdown_requested,
        }


async def main(settings: Optional[Settings] = None):
    """Main entry point."""
    settings = settings or get_settings()
    configure_logging(settings.runner.log_level, json_format=settings.runner.log_json)
    await RelayService(settings).run()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
