"""Unit tests for the relay process bootstrap."""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from outbox_relay.__main__ import RelayService, build_checkpoint_store, build_runner
from outbox_relay.connectors.cdc import (
    FileCheckpointStore,
    LoggingPublisher,
    MemoryCheckpointStore,
    RunnerEvent,
    SqlCheckpointStore,
)
from outbox_relay.settings import CheckpointSettings, Settings


@pytest.fixture
def settings(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CHECKPOINT_FILE_PATH", str(tmp_path / "token.json"))
    monkeypatch.setenv("OUTBOX_RESTART_DELAY", "0.5")
    return Settings()


class TestBuildCheckpointStore:
    """Test checkpoint backend selection."""

    def test_memory(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        assert isinstance(build_checkpoint_store(CheckpointSettings(backend="memory")), MemoryCheckpointStore)

    def test_file(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        store = build_checkpoint_store(CheckpointSettings(backend="file", file_path=str(tmp_path / "t.json")))
        assert isinstance(store, FileCheckpointStore)
        assert store.path == tmp_path / "t.json"

    def test_sql(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        store = build_checkpoint_store(
            CheckpointSettings(backend="sql", database_url=f"sqlite:///{tmp_path / 'c.db'}", job_id="relay-9"),
            collection="outbox",
        )
        try:
            assert isinstance(store, SqlCheckpointStore)
            assert (store.job_id, store.collection) == ("relay-9", "outbox")
        finally:
            store.close()

    def test_sql_requires_url(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ValueError, match="CHECKPOINT_DATABASE_URL is required"):
            build_checkpoint_store(CheckpointSettings(backend="sql"))


class TestBuildRunner:
    """Test runner wiring from settings."""

    def test_wires_runner_from_settings(self, settings):
        with patch("outbox_relay.connectors.cdc.change_feed.AsyncMongoClient"):
            runner = build_runner(settings)

        assert runner.config.watch.filter == {"ns.coll": "outbox"}
        assert runner.config.restart_delay == 0.5
        assert isinstance(runner.config.storage, FileCheckpointStore)
        assert isinstance(runner.config.publisher, LoggingPublisher)
        for event in RunnerEvent:
            assert runner.events.listener_count(event) == 1

    def test_health_check_before_run(self, settings):
        service = RelayService(settings)
        assert service.health_check() == {
            "status": "unhealthy",
            "runner": None,
            "shutdown_requested": False,
        }

    @pytest.mark.asyncio
    async def test_request_shutdown_stops_runner(self, settings):
        runner = MagicMock()
        runner.start = AsyncMock()
        runner.stop = AsyncMock()
        runner.health.return_value = {"client": "connected", "stream": "running"}
        service = RelayService(settings)

        with patch("outbox_relay.__main__.build_runner", return_value=runner), \
                patch.object(RelayService, "_setup_signal_handlers"):
            running = asyncio.create_task(service.run())
            await asyncio.sleep(0.01)
            assert service.health_check()["status"] == "healthy"

            service.request_shutdown()
            await asyncio.wait_for(running, timeout=1)

        runner.start.assert_awaited_once()
        runner.stop.assert_awaited_once()
        assert service.health_check()["shutdown_requested"] is True

    def test_first_signal_requests_shutdown(self, settings):
        service = RelayService(settings)
        service._handle_shutdown_signal(signal.SIGTERM)
        assert service._shutdown_event.is_set()

        with pytest.raises(SystemExit):
            service._handle_shutdown_signal(signal.SIGTERM)
