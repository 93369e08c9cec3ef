"""
CDC (Change Data Capture) module relaying outbox inserts from MongoDB change streams.
"""

from .change_feed import ConnectionMonitor, MongoChangeFeed, MongoChangeFeedSource
from .checkpoint_store import FileCheckpointStore, MemoryCheckpointStore, OutboxCheckpoint, SqlCheckpointStore
from .errors import (
    CheckpointError,
    ClientConnectionError,
    FeedEnded,
    FeedError,
    OutboxError,
    PublishError,
)
from .events import EventRegistry, RunnerEvent
from .interfaces import ChangeFeed, ChangeFeedSource, CheckpointStore, ConnectionListener, PublishSink
from .models import (
    ChangeEvent,
    ClientConfig,
    ConnectionStatus,
    FeedStatus,
    RunnerConfig,
    RunnerState,
    WatchConfig,
)
from .outbox_runner import OutboxRunner, build_pipeline, build_watch_options
from .publishers import LoggingPublisher
from .task_queue import DeliveryUnit, TaskQueue

__all__ = [
    "OutboxRunner",
    "build_pipeline",
    "build_watch_options",
    "TaskQueue",
    "DeliveryUnit",
    "EventRegistry",
    "RunnerEvent",
    "ChangeEvent",
    "ClientConfig",
    "WatchConfig",
    "RunnerConfig",
    "RunnerState",
    "ConnectionStatus",
    "FeedStatus",
    "ChangeFeed",
    "ChangeFeedSource",
    "CheckpointStore",
    "PublishSink",
    "ConnectionListener",
    "MongoChangeFeedSource",
    "MongoChangeFeed",
    "ConnectionMonitor",
    "MemoryCheckpointStore",
    "FileCheckpointStore",
    "SqlCheckpointStore",
    "OutboxCheckpoint",
    "LoggingPublisher",
    "OutboxError",
    "ClientConnectionError",
    "FeedError",
    "FeedEnded",
    "PublishError",
    "CheckpointError",
]
