"""
MongoDB change stream source.

Opens change streams through the pymongo async API and surfaces the client's
connection lifecycle (pool and heartbeat monitoring) to the runner.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import AsyncMongoClient, monitoring
from pymongo.errors import PyMongoError

from .errors import ClientConnectionError, FeedError
from .interfaces import ConnectionListener
from .models import ChangeEvent

logger = logging.getLogger(__name__)


class ConnectionMonitor(monitoring.ConnectionPoolListener, monitoring.ServerHeartbeatListener):
    """
    pymongo event listener forwarding connection lifecycle to listeners.

    connection_ready -> connected, pool_closed -> closed,
    heartbeat failure -> error.
    """

    def __init__(self):
        self.listeners: List[ConnectionListener] = []

    def _notify(self, name: str, *args: Any) -> None:
        for listener in list(self.listeners):
            try:
                getattr(listener, name)(*args)
            except Exception:
                logger.exception(f"Connection listener {name} failed")

    # Pool events
    def connection_ready(self, event):
        self._notify("on_connected")

    def pool_closed(self, event):
        self._notify("on_closed")

    def pool_created(self, event):
        pass

    def pool_ready(self, event):
        pass

    def pool_cleared(self, event):
        logger.debug(f"Connection pool cleared for {event.address}")

    def connection_created(self, event):
        pass

    def connection_closed(self, event):
        pass

    def connection_check_out_started(self, event):
        pass

    def connection_check_out_failed(self, event):
        pass

    def connection_checked_out(self, event):
        pass

    def connection_checked_in(self, event):
        pass

    # Heartbeat events
    def started(self, event):
        pass

    def succeeded(self, event):
        pass

    def failed(self, event):
        self._notify(
            "on_error",
            ClientConnectionError(f"Heartbeat to {event.connection_id} failed: {event.reply}"),
        )


class MongoChangeFeed:
    """An open change stream yielding ``ChangeEvent``s."""

    def __init__(self, stream):
        self._stream = stream

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        try:
            change = await self._stream.next()
        except StopAsyncIteration:
            raise
        except PyMongoError as e:
            raise FeedError(f"Change stream failed: {e}") from e
        return ChangeEvent.from_change(change)

    async def close(self) -> None:
        await self._stream.close()


class MongoChangeFeedSource:
    """
    Change feed source backed by ``pymongo.AsyncMongoClient``.

    Watches the whole deployment by default, or one database / collection when
    given. A prebuilt ``client`` only reports connection events if it was
    created with ``event_listeners=[monitor]`` and the same ``monitor`` is
    passed here.

    Example:
        >>> source = MongoChangeFeedSource("mongodb://localhost:27017/?replicaSet=rs0")
        >>> feed = await source.open([{"$match": {"operationType": "insert"}}], {})
        >>> async for event in feed:
        ...     print(event.token)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        database: Optional[str] = None,
        collection: Optional[str] = None,
        client_options: Optional[Dict[str, Any]] = None,
        client: Optional[AsyncMongoClient] = None,
        monitor: Optional[ConnectionMonitor] = None,
    ):
        if client is None and not url:
            raise ValueError("Either url or client is required")
        if collection and not database:
            raise ValueError("collection requires database")

        self.monitor = monitor or ConnectionMonitor()
        if client is None:
            options = dict(client_options or {})
            options["event_listeners"] = list(options.get("event_listeners", [])) + [self.monitor]
            client = AsyncMongoClient(url, **options)

        self.client = client
        self.database = database
        self.collection = collection

    def add_listener(self, listener: ConnectionListener) -> None:
        self.monitor.listeners.append(listener)

    def _watch_target(self):
        if self.database and self.collection:
            return self.client[self.database][self.collection]
        if self.database:
            return self.client[self.database]
        return self.client

    async def open(self, pipeline: List[Dict[str, Any]], options: Dict[str, Any]) -> MongoChangeFeed:
        """
        Open a change stream.

        Raises:
            FeedError: If the server refuses the stream
        """
        target = self._watch_target()
        logger.info(
            "Opening change stream",
            extra={
                "database": self.database,
                "collection": self.collection,
                "has_resume_token": options.get("resume_after") is not None,
            },
        )
        try:
            stream = await target.watch(pipeline=pipeline, **options)
        except PyMongoError as e:
            raise FeedError(f"Failed to open change stream: {e}") from e
        return MongoChangeFeed(stream)

    async def close(self) -> None:
        """Force-close the client; open change streams die with it."""
        await self.client.close()
        logger.info("MongoDB client closed")
