"""
Outbox runner.

Tails a change feed and delivers every insert to a publish sink in commit
order, persisting the resume token after each successful publish. Any failure
(publish, checkpoint, feed error or feed end) drops undelivered work, closes
the feed and restarts from the last persisted checkpoint after a fixed delay.

Delivery is at-least-once: a change whose publish succeeded but whose
checkpoint write failed is published again after the restart.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from prometheus_client import Counter

from ...utils.logging import CorrelationContext
from .change_feed import MongoChangeFeedSource
from .errors import CheckpointError, FeedEnded, FeedError, PublishError
from .events import EventRegistry, Handler, RunnerEvent
from .interfaces import ChangeFeed, ChangeFeedSource, ConnectionListener
from .models import ChangeEvent, ConnectionStatus, FeedStatus, RunnerConfig, RunnerState
from .task_queue import DeliveryUnit, TaskQueue

logger = logging.getLogger(__name__)

outbox_changes_total = Counter(
    'outbox_changes_total',
    'Total changes handed to the publisher'
)

outbox_committed_total = Counter(
    'outbox_committed_total',
    'Total changes published and checkpointed'
)

outbox_errors_total = Counter(
    'outbox_errors_total',
    'Total errors announced by the runner',
    ['error_type']
)

outbox_restarts_total = Counter(
    'outbox_restarts_total',
    'Total change stream restarts',
    ['reason']
)


def build_pipeline(user_filter: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Match inserts AND the caller's filter.

    A caller filter that names ``operationType`` itself is combined with
    ``$and`` so it can narrow the insert constraint but never replace it.
    """
    if "operationType" in user_filter:
        match = {"$and": [{"operationType": "insert"}, dict(user_filter)]}
    else:
        match = {"operationType": "insert", **user_filter}
    return [{"$match": match}]


def build_watch_options(resume_token: Any, user_options: Dict[str, Any]) -> Dict[str, Any]:
    """Resume after ``resume_token`` unless the caller's options say otherwise.

    Caller options are applied last, so a caller-supplied ``resume_after``
    (or ``start_after``/``start_at_operation_time``) wins over the checkpoint.
    """
    options: Dict[str, Any] = {}
    if resume_token is not None:
        options["resume_after"] = resume_token
    options.update(user_options)
    return options


class _Attempt:
    """One open feed and the deliveries it produced."""

    def __init__(self, feed: ChangeFeed):
        self.feed = feed
        self.failed = asyncio.Event()
        self.error: Optional[BaseException] = None


class OutboxRunner:
    """
    Relays inserts from a change feed to a publisher, one at a time.

    Lifecycle (feed axis): connecting -> running -> restarting -> running ...
    -> closed. ``closed`` is terminal once ``stop()`` has been called.

    Events (subscribe with ``on``): connected, close, error(err),
    running(pipeline, options), restarting, change(event), committed(token).

    Thread Safety: NOT thread-safe. Use one instance per event loop.

    Example:
        >>> runner = OutboxRunner(RunnerConfig(
        ...     client=ClientConfig(url="mongodb://localhost:27017/?replicaSet=rs0"),
        ...     watch=WatchConfig(filter={"ns.coll": "outbox"}),
        ...     storage=FileCheckpointStore("token.json"),
        ...     publisher=LoggingPublisher(),
        ... ))
        >>> runner.on("committed", lambda token: print(token))
        >>> await runner.start()
    """

    def __init__(self, config: RunnerConfig, source: Optional[ChangeFeedSource] = None):
        """
        Initialize the runner.

        Args:
            config: Runner configuration
            source: Change feed source; defaults to a MongoDB source built
                from ``config.client``

        Raises:
            ValueError: If neither ``source`` nor ``config.client`` is given
        """
        if source is None:
            if config.client is None:
                raise ValueError("config.client is required when no source is given")
            source = MongoChangeFeedSource(config.client.url, client_options=config.client.options)

        self.config = config
        self.source = source
        self.queue = TaskQueue()
        self.events = EventRegistry()
        self.state = RunnerState()

        self._attempt: Optional[_Attempt] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Future] = None
        self._stopped = False

        source.add_listener(ConnectionListener(
            on_connected=self._on_connected,
            on_closed=self._on_closed,
            on_error=self._on_connection_error,
        ))

    # Subscription surface

    def on(self, event: Union[RunnerEvent, str], handler: Handler) -> "OutboxRunner":
        self.events.on(event, handler)
        return self

    def off(self, event: Union[RunnerEvent, str], handler: Handler) -> "OutboxRunner":
        self.events.off(event, handler)
        return self

    def emit(self, event: Union[RunnerEvent, str], *args: Any) -> bool:
        return self.events.emit(RunnerEvent(event), *args)

    def health(self) -> Dict[str, str]:
        """Current ``{"client": ..., "stream": ...}`` status pair."""
        return self.state.as_dict()

    @property
    def running(self) -> bool:
        return self._supervisor is not None and not self._supervisor.done()

    # Lifecycle

    async def start(self) -> None:
        """
        Read the checkpoint, open the feed and start relaying in the background.

        Failures of this first start propagate to the caller. Once running,
        failures are reported through the ``error`` event and retried.

        Raises:
            RuntimeError: If the runner is already started
            CheckpointError: If the checkpoint cannot be read
            FeedError: If the feed cannot be opened
        """
        if self.running:
            raise RuntimeError("OutboxRunner is already started")

        self._stopped = False
        attempt = await self._open()
        if attempt is None:
            return
        self._supervisor = asyncio.create_task(self._supervise(attempt), name="outbox-runner")

    async def stop(self) -> None:
        """
        Stop for good: no more feed reads and no more restarts.

        Deliveries that have not started are dropped; one already running is
        not interrupted and completes (or fails) on its own.
        """
        self._stopped = True
        self.queue.clear()

        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            try:
                await supervisor
            except asyncio.CancelledError:
                pass

        closing, self._closing = self._closing, None
        if closing is not None:
            await closing

        attempt, self._attempt = self._attempt, None
        if attempt is not None:
            await self._close_feed(attempt.feed)

        await self.source.close()
        self.state.stream = FeedStatus.CLOSED
        logger.info("Outbox runner stopped")

    async def _open(self) -> Optional[_Attempt]:
        """Open a feed from the stored checkpoint. Returns None if stopped meanwhile."""
        self.state.stream = FeedStatus.CONNECTING

        try:
            resume_token = await self.config.storage.get()
        except CheckpointError:
            raise
        except Exception as e:
            raise CheckpointError(f"Failed to load checkpoint: {e}") from e
        if self._stopped:
            return None

        pipeline = build_pipeline(self.config.watch.filter)
        options = build_watch_options(resume_token, self.config.watch.options)

        feed = await self.source.open(pipeline, options)
        if self._stopped:
            await self._close_feed(feed)
            return None

        attempt = _Attempt(feed)
        self._attempt = attempt

        logger.info(
            "Change stream running",
            extra={"has_resume_token": resume_token is not None, "options": list(options)},
        )
        self.emit(RunnerEvent.RUNNING, pipeline, options)
        self.state.stream = FeedStatus.RUNNING
        return attempt

    async def _supervise(self, attempt: Optional[_Attempt]) -> None:
        """Consume the current feed; restart after every failure until stopped."""
        reason: BaseException = FeedEnded()
        while not self._stopped:
            if attempt is not None:
                reason = await self._consume(attempt)
            if self._stopped:
                return

            await self._restart(attempt, reason)
            if self._stopped:
                return

            try:
                attempt = await self._open()
            except Exception as e:
                logger.error(f"Failed to restart change stream: {e}")
                self._announce_error(e)
                reason, attempt = e, None

    async def _consume(self, attempt: _Attempt) -> BaseException:
        """Run until a delivery fails or the feed errors/ends. Returns the cause."""
        reader = asyncio.create_task(self._pump(attempt))
        failed = asyncio.create_task(attempt.failed.wait())
        try:
            await asyncio.wait({reader, failed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            reader.cancel()
            failed.cancel()
            await asyncio.gather(reader, failed, return_exceptions=True)

        if attempt.failed.is_set():
            return attempt.error

        error = reader.exception() if not reader.cancelled() else None
        if error is not None:
            if not isinstance(error, FeedError):
                wrapped = FeedError(f"Change stream failed: {error}")
                wrapped.__cause__ = error
                error = wrapped
            logger.error(f"Change stream failed: {error}")
            self._announce_error(error)
            return error

        logger.warning("Change stream ended")
        return FeedEnded("Change stream ended")

    async def _pump(self, attempt: _Attempt) -> None:
        async for event in attempt.feed:
            if attempt.failed.is_set():
                break
            self.queue.push(self._delivery_unit(attempt, event))

    async def _restart(self, attempt: Optional[_Attempt], reason: BaseException) -> None:
        """Drop pending work, close the feed and wait out the backoff."""
        outbox_restarts_total.labels(reason=type(reason).__name__).inc()
        self.queue.clear()
        self._attempt = None

        self.state.stream = FeedStatus.RESTARTING
        logger.info(
            f"Change stream restarting in {self.config.restart_delay}s",
            extra={"reason": type(reason).__name__},
        )
        self.emit(RunnerEvent.RESTARTING)

        backoff = asyncio.sleep(self.config.restart_delay)
        if attempt is None:
            await backoff
            return

        # stop() waits for this close if it cancels the backoff
        self._closing = asyncio.ensure_future(self._close_feed(attempt.feed))
        await asyncio.gather(asyncio.shield(self._closing), backoff)
        self._closing = None

    async def _close_feed(self, feed: ChangeFeed) -> None:
        try:
            await feed.close()
        except Exception as e:
            logger.debug(f"Ignoring change stream close failure: {e}")
            return
        self.state.stream = FeedStatus.CLOSED

    # Delivery

    def _delivery_unit(self, attempt: _Attempt, event: ChangeEvent) -> DeliveryUnit:
        async def execute() -> None:
            document_id = event.document_id
            with CorrelationContext(str(document_id) if document_id is not None else None):
                await self._deliver(event)

        def on_error(error: Exception) -> None:
            self._delivery_failed(attempt, error)

        return DeliveryUnit(execute=execute, on_error=on_error)

    async def _deliver(self, event: ChangeEvent) -> None:
        """Publish, persist the checkpoint, then announce the commit."""
        outbox_changes_total.inc()
        self.emit(RunnerEvent.CHANGE, event)

        try:
            await self.config.publisher.publish(event)
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(f"Failed to publish change {event.token}: {e}") from e

        try:
            await self.config.storage.set(event.token)
        except CheckpointError:
            raise
        except Exception as e:
            raise CheckpointError(f"Failed to persist checkpoint {event.token}: {e}") from e

        outbox_committed_total.inc()
        logger.debug("Committed change", extra={"resume_token": str(event.token)})
        self.emit(RunnerEvent.COMMITTED, event.token)

    def _delivery_failed(self, attempt: _Attempt, error: Exception) -> None:
        logger.error(f"Delivery failed: {error}", extra={"error_type": type(error).__name__})
        self._announce_error(error)
        if self._stopped:
            return
        # A unit left over from a superseded attempt must not restart the current one
        if attempt is not self._attempt:
            asyncio.get_running_loop().call_soon(self.queue.resume)
            return
        self.queue.clear()
        attempt.error = error
        attempt.failed.set()

    def _announce_error(self, error: BaseException) -> None:
        outbox_errors_total.labels(error_type=type(error).__name__).inc()
        self.emit(RunnerEvent.ERROR, error)

    # Connection lifecycle

    def _on_connected(self) -> None:
        self.state.client = ConnectionStatus.CONNECTED
        self.emit(RunnerEvent.CONNECTED)

    def _on_closed(self) -> None:
        self.state.client = ConnectionStatus.CLOSED
        self.emit(RunnerEvent.CLOSE)

    def _on_connection_error(self, error: BaseException) -> None:
        logger.warning(f"MongoDB connection error: {error}")
        self._announce_error(error)
