"""
Observability event surface of the outbox runner.
"""

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, DefaultDict, List, Union

logger = logging.getLogger(__name__)


class RunnerEvent(str, Enum):
    """Events the runner announces, with their payloads."""
    CONNECTED = "connected"      # ()
    CLOSE = "close"              # ()
    ERROR = "error"              # (error,)
    RUNNING = "running"          # (pipeline, options)
    RESTARTING = "restarting"    # ()
    CHANGE = "change"            # (ChangeEvent,)
    COMMITTED = "committed"      # (token,)


Handler = Callable[..., Any]


class EventRegistry:
    """
    Handler lists keyed by ``RunnerEvent``.

    Dispatch is synchronous, in registration order. A handler that raises is
    logged and skipped; the remaining handlers still run.
    """

    def __init__(self):
        self._handlers: DefaultDict[RunnerEvent, List[Handler]] = defaultdict(list)

    @staticmethod
    def _resolve(event: Union[RunnerEvent, str]) -> RunnerEvent:
        try:
            return RunnerEvent(event)
        except ValueError:
            allowed = ", ".join(e.value for e in RunnerEvent)
            raise ValueError(f"Unknown event {event!r}, expected one of: {allowed}") from None

    def on(self, event: Union[RunnerEvent, str], handler: Handler) -> None:
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._handlers[self._resolve(event)].append(handler)

    def off(self, event: Union[RunnerEvent, str], handler: Handler) -> bool:
        """Remove one registration of ``handler``. Returns False if absent."""
        handlers = self._handlers[self._resolve(event)]
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def listener_count(self, event: Union[RunnerEvent, str]) -> int:
        return len(self._handlers[self._resolve(event)])

    def emit(self, event: RunnerEvent, *args: Any) -> bool:
        """Call every handler for ``event``. Returns True if any was registered."""
        handlers = list(self._handlers[event])
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                logger.exception(
                    f"Handler for '{event.value}' event failed",
                    extra={"event": event.value},
                )
        return bool(handlers)
