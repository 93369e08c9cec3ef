"""
Publish sinks.
"""

import logging
from typing import Optional

from bson import json_util

from .models import ChangeEvent

logger = logging.getLogger(__name__)


class LoggingPublisher:
    """Writes each event to a logger as Extended JSON. Never fails."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.INFO):
        self.log = log or logger
        self.level = level
        self.published = 0

    async def publish(self, event: ChangeEvent) -> None:
        self.log.log(
            self.level,
            f"Outbox event {json_util.dumps(event.document)}",
            extra={"namespace": event.namespace, "document_id": str(event.document_id)},
        )
        self.published += 1
