"""
Data model for the outbox relay: change events, runner configuration and
runner state.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import FeedError


class ConnectionStatus(str, Enum):
    """Connection status axis."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class FeedStatus(str, Enum):
    """Change feed status axis."""
    CONNECTING = "connecting"
    RUNNING = "running"
    RESTARTING = "restarting"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChangeEvent:
    """
    A single insert observed on the change feed.

    ``token`` is the change ``_id``; it doubles as the checkpoint value
    persisted once the event has been published.
    """
    token: Any
    operation_type: str
    document: Optional[Dict[str, Any]] = None
    namespace: Optional[str] = None
    document_key: Optional[Dict[str, Any]] = None
    cluster_time: Any = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_change(cls, change: Dict[str, Any]) -> "ChangeEvent":
        """Build an event from a raw change stream document.

        Raises:
            FeedError: If the document carries no ``_id`` (resume token)
        """
        if "_id" not in change:
            raise FeedError("Change document has no resume token (_id)")

        ns = change.get("ns") or {}
        namespace = None
        if ns.get("db"):
            namespace = f"{ns['db']}.{ns['coll']}" if ns.get("coll") else ns["db"]

        return cls(
            token=change["_id"],
            operation_type=change.get("operationType", ""),
            document=change.get("fullDocument"),
            namespace=namespace,
            document_key=change.get("documentKey"),
            cluster_time=change.get("clusterTime"),
            raw=change,
        )

    @property
    def document_id(self) -> Any:
        """``_id`` of the inserted document, if known."""
        if self.document_key and "_id" in self.document_key:
            return self.document_key["_id"]
        if self.document and "_id" in self.document:
            return self.document["_id"]
        return None


@dataclass(frozen=True)
class ClientConfig:
    """Connection parameters for the database client."""
    url: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WatchConfig:
    """Change stream filter and options.

    ``filter`` is AND-ed with ``operationType == "insert"``. ``options`` are
    applied after the computed resume position and may override it.
    """
    filter: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RunnerConfig:
    """Configuration for the outbox runner."""
    watch: WatchConfig
    storage: Any  # CheckpointStore
    publisher: Any  # PublishSink
    client: Optional[ClientConfig] = None
    restart_delay: float = 1.0  # Fixed backoff before each restart, seconds

    def __post_init__(self):
        """Validate configuration values."""
        if not (hasattr(self.storage, "get") and hasattr(self.storage, "set")):
            raise TypeError("storage must provide get() and set()")
        if not hasattr(self.publisher, "publish"):
            raise TypeError("publisher must provide publish()")
        if self.restart_delay < 0:
            raise ValueError("restart_delay must be non-negative")
        # Own copies so later caller mutation cannot leak in
        object.__setattr__(
            self,
            "watch",
            WatchConfig(filter=dict(self.watch.filter), options=dict(self.watch.options)),
        )


@dataclass
class RunnerState:
    """Two independent status axes, mutated only by the runner."""
    client: ConnectionStatus = ConnectionStatus.CONNECTING
    stream: FeedStatus = FeedStatus.CONNECTING

    def as_dict(self) -> Dict[str, str]:
        return {"client": self.client.value, "stream": self.stream.value}
