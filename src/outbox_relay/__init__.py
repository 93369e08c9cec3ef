"""
Outbox relay: delivers MongoDB outbox inserts in commit order with durable resume tokens.
"""

from .connectors.cdc import (
    ChangeEvent,
    CheckpointError,
    ClientConfig,
    FeedError,
    FileCheckpointStore,
    LoggingPublisher,
    MemoryCheckpointStore,
    MongoChangeFeedSource,
    OutboxError,
    OutboxRunner,
    PublishError,
    RunnerConfig,
    RunnerEvent,
    SqlCheckpointStore,
    WatchConfig,
)

__version__ = "0.1.0"

__all__ = [
    "OutboxRunner",
    "RunnerConfig",
    "ClientConfig",
    "WatchConfig",
    "RunnerEvent",
    "ChangeEvent",
    "MongoChangeFeedSource",
    "MemoryCheckpointStore",
    "FileCheckpointStore",
    "SqlCheckpointStore",
    "LoggingPublisher",
    "OutboxError",
    "FeedError",
    "PublishError",
    "CheckpointError",
]
