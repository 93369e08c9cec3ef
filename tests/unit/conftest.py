"""Shared fixtures: in-memory change feed, source, publisher and store doubles."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from outbox_relay.connectors.cdc import (
    ChangeEvent,
    MemoryCheckpointStore,
    OutboxRunner,
    RunnerConfig,
    RunnerEvent,
    WatchConfig,
)

_END = object()


def make_change(n: int) -> Dict[str, Any]:
    """Raw change stream document for outbox insert number ``n``."""
    return {
        "_id": {"_data": f"{n:04d}"},
        "operationType": "insert",
        "ns": {"db": "app", "coll": "outbox"},
        "documentKey": {"_id": n},
        "fullDocument": {"_id": n, "event": f"order.created.{n}"},
    }


def token(n: int) -> Dict[str, str]:
    return {"_data": f"{n:04d}"}


class FakeFeed:
    """Change feed driven by the test: push changes, fail or end it."""

    def __init__(self, close_error: Optional[Exception] = None):
        self._items: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_error = close_error
        self.close_gate: Optional[asyncio.Event] = None
        self.close_calls = 0

    def push(self, *numbers: int) -> None:
        for n in numbers:
            self._items.put_nowait(ChangeEvent.from_change(make_change(n)))

    def fail(self, error: Exception) -> None:
        self._items.put_nowait(error)

    def end(self) -> None:
        self._items.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._items.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_gate is not None:
            await self.close_gate.wait()
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeSource:
    """Change feed source recording every open() call."""

    def __init__(self):
        self.listeners = []
        self.opened: List[tuple] = []
        self.feeds: List[FakeFeed] = []
        self.open_errors: List[Exception] = []
        self.close_error: Optional[Exception] = None
        self.open_gate: Optional[asyncio.Event] = None
        self.closed = False

    def add_listener(self, listener) -> None:
        self.listeners.append(listener)

    async def open(self, pipeline, options) -> FakeFeed:
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_errors:
            raise self.open_errors.pop(0)
        feed = FakeFeed(close_error=self.close_error)
        self.opened.append((pipeline, options))
        self.feeds.append(feed)
        return feed

    async def close(self) -> None:
        self.closed = True
        for listener in self.listeners:
            listener.on_closed()


class RecordingPublisher:
    """Records publish calls; can block on a gate or fail chosen events once."""

    def __init__(self):
        self.calls: List[Any] = []
        self.failures: Dict[Any, Exception] = {}
        self.gate: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0

    def fail_on(self, n: int, error: Optional[Exception] = None) -> None:
        self.failures[n] = error or RuntimeError(f"broker rejected {n}")

    async def publish(self, event: ChangeEvent) -> None:
        self.calls.append(event.token)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0)
            error = self.failures.pop(event.document_id, None)
            if error is not None:
                raise error
        finally:
            self.active -= 1


class FlakyCheckpointStore(MemoryCheckpointStore):
    """Memory store that keeps every saved token; set() fails once for chosen tokens."""

    def __init__(self, token=None):
        super().__init__(token)
        self.history: List[Any] = []
        self.fail_tokens: List[Any] = []
        self.get_gate: Optional[asyncio.Event] = None

    async def get(self):
        if self.get_gate is not None:
            await self.get_gate.wait()
        return await super().get()

    async def set(self, value) -> None:
        if value in self.fail_tokens:
            self.fail_tokens.remove(value)
            raise OSError("disk full")
        await super().set(value)
        self.history.append(value)


class EventRecorder:
    """Subscribes to every runner event and keeps (name, args) in order."""

    def __init__(self, runner: OutboxRunner):
        self.events: List[tuple] = []
        for event in RunnerEvent:
            runner.on(event, self._recorder(event.value))

    def _recorder(self, name: str):
        def record(*args):
            self.events.append((name, args))
        return record

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def payloads(self, name: str) -> List[tuple]:
        return [args for event, args in self.events if event == name]

    def committed(self) -> List[Any]:
        return [args[0] for args in self.payloads("committed")]

    def changes(self) -> List[Any]:
        return [args[0].token for args in self.payloads("change")]

    def errors(self) -> List[BaseException]:
        return [args[0] for args in self.payloads("error")]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def store():
    return FlakyCheckpointStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest_asyncio.fixture
async def make_runner(source, store, publisher):
    """Runner factory; every runner built is stopped on teardown."""
    created: List[OutboxRunner] = []

    def factory(**overrides) -> OutboxRunner:
        options = {
            "watch": WatchConfig(filter={"ns.coll": "outbox"}),
            "storage": store,
            "publisher": publisher,
            "restart_delay": 0.01,
        }
        options.update(overrides)
        runner = OutboxRunner(RunnerConfig(**options), source=source)
        created.append(runner)
        return runner

    yield factory

    for runner in created:
        await runner.stop()


@pytest.fixture
def recorder_for():
    return EventRecorder


@pytest.fixture
def tok():
    return token


@pytest.fixture
def change_doc():
    return make_change
