"""
Error taxonomy for the outbox relay.

Every error below is recovered the same way by the runner: pending deliveries
are dropped, the feed is closed and the runner restarts from the last
persisted checkpoint after a fixed delay.
"""


class OutboxError(Exception):
    """Base exception for outbox relay errors."""
    pass


class ClientConnectionError(OutboxError):
    """The underlying database connection reported a failure."""
    pass


class FeedError(OutboxError):
    """The change feed cursor failed terminally."""
    pass


class FeedEnded(FeedError):
    """The change feed finished (invalidated or cursor expired)."""
    pass


class PublishError(OutboxError):
    """The publish sink rejected an event."""
    pass


class CheckpointError(OutboxError):
    """Error saving/loading checkpoint."""
    pass
