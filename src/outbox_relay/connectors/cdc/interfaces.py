"""
Collaborator contracts the outbox runner is wired with.

The runner only talks to these protocols; the MongoDB source, the checkpoint
stores and the publishers in this package are one implementation each.
"""

from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from .models import ChangeEvent


@runtime_checkable
class CheckpointStore(Protocol):
    """Durable get/set of the last committed resume token."""

    async def get(self) -> Optional[Any]:
        """Return the stored token, or None when nothing was committed yet."""
        ...

    async def set(self, token: Any) -> None:
        """Persist ``token`` as the new checkpoint."""
        ...


@runtime_checkable
class PublishSink(Protocol):
    """Delivers one event to the outside world."""

    async def publish(self, event: ChangeEvent) -> None:
        ...


@runtime_checkable
class ChangeFeed(Protocol):
    """
    An open change feed.

    Iteration yields events in commit order. Raising from iteration signals a
    terminal feed error; ``StopAsyncIteration`` signals the feed ended.
    """

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        ...

    async def close(self) -> None:
        ...


@dataclass
class ConnectionListener:
    """Callbacks for connection lifecycle signals."""
    on_connected: Callable[[], None]
    on_closed: Callable[[], None]
    on_error: Callable[[BaseException], None]


@runtime_checkable
class ChangeFeedSource(Protocol):
    """Opens change feeds and owns the underlying connection."""

    def add_listener(self, listener: ConnectionListener) -> None:
        ...

    async def open(self, pipeline: List[Dict[str, Any]], options: Dict[str, Any]) -> ChangeFeed:
        ...

    async def close(self) -> None:
        """Force-close the connection; open feeds die with it."""
        ...
