"""Unit tests for checkpoint stores."""

import pytest

from outbox_relay.connectors.cdc import (
    CheckpointError,
    FileCheckpointStore,
    MemoryCheckpointStore,
    SqlCheckpointStore,
)

TOKEN = {"_data": "8264F0A1B2000000012B022C0100296E5A1004"}


class TestMemoryCheckpointStore:
    """Test MemoryCheckpointStore."""

    @pytest.mark.asyncio
    async def test_empty_store_returns_none(self):
        assert await MemoryCheckpointStore().get() is None

    @pytest.mark.asyncio
    async def test_set_then_get(self):
        store = MemoryCheckpointStore()
        await store.set(TOKEN)
        assert await store.get() == TOKEN

    @pytest.mark.asyncio
    async def test_keeps_only_latest_token(self):
        store = MemoryCheckpointStore()
        await store.set({"_data": "01"})
        await store.set(TOKEN)
        assert store.token == TOKEN
        assert vars(store) == {"token": TOKEN}


class TestFileCheckpointStore:
    """Test FileCheckpointStore."""

    @pytest.mark.asyncio
    async def test_missing_file_reads_as_absent(self, tmp_path):
        assert await FileCheckpointStore(tmp_path / "token.json").get() is None

    @pytest.mark.asyncio
    async def test_empty_file_reads_as_absent(self, tmp_path):
        path = tmp_path / "token.json"
        path.write_text("")
        assert await FileCheckpointStore(path).get() is None

    @pytest.mark.asyncio
    async def test_set_then_get(self, tmp_path):
        store = FileCheckpointStore(tmp_path / "state" / "token.json")

        await store.set(TOKEN)

        assert await store.get() == TOKEN
        assert await FileCheckpointStore(tmp_path / "state" / "token.json").get() == TOKEN

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, tmp_path):
        store = FileCheckpointStore(tmp_path / "token.json")

        await store.set({"_data": "01"})
        await store.set({"_data": "02"})

        assert await store.get() == {"_data": "02"}
        assert [p.name for p in tmp_path.iterdir()] == ["token.json"]

    @pytest.mark.asyncio
    async def test_corrupted_file_raises(self, tmp_path):
        path = tmp_path / "token.json"
        path.write_text("{not json")

        with pytest.raises(CheckpointError, match="Corrupted checkpoint file"):
            await FileCheckpointStore(path).get()

    @pytest.mark.asyncio
    async def test_unserializable_token_raises(self, tmp_path):
        store = FileCheckpointStore(tmp_path / "token.json")

        with pytest.raises(CheckpointError, match="Cannot write checkpoint file"):
            await store.set({"_data": object()})
        assert list(tmp_path.iterdir()) == []


class TestSqlCheckpointStore:
    """Test SqlCheckpointStore against SQLite."""

    @pytest.fixture
    def store(self, tmp_path):
        store = SqlCheckpointStore(f"sqlite:///{tmp_path / 'checkpoints.db'}", job_id="relay-1", collection="outbox")
        yield store
        store.close()

    def test_init_failure_raises_checkpoint_error(self):
        with pytest.raises(CheckpointError, match="Database connection failed"):
            SqlCheckpointStore("notadialect://nowhere", job_id="relay-1")

    def test_load_without_checkpoint(self, store):
        assert store.load_checkpoint() is None

    def test_save_and_load(self, store):
        store.save_checkpoint(TOKEN)
        assert store.load_checkpoint() == TOKEN
        assert store.records_processed == 1

    def test_save_updates_existing_row(self, store):
        store.save_checkpoint({"_data": "01"})
        store.save_checkpoint({"_data": "02"})

        assert store.load_checkpoint() == {"_data": "02"}
        assert store.records_processed == 2

    def test_rows_are_scoped_by_job_and_collection(self, store, tmp_path):
        other = SqlCheckpointStore(f"sqlite:///{tmp_path / 'checkpoints.db'}", job_id="relay-2", collection="outbox")
        try:
            store.save_checkpoint(TOKEN)
            assert other.load_checkpoint() is None
        finally:
            other.close()

    def test_invalid_token_rejected(self, store):
        with pytest.raises(CheckpointError, match="Invalid resume token structure"):
            store.save_checkpoint({})
        with pytest.raises(CheckpointError, match="Invalid resume token structure"):
            store.save_checkpoint("not_a_dict")

    def test_delete_checkpoint(self, store):
        store.save_checkpoint(TOKEN)

        assert store.delete_checkpoint() is True
        assert store.load_checkpoint() is None
        assert store.delete_checkpoint() is False

    @pytest.mark.asyncio
    async def test_async_get_and_set(self, store):
        assert await store.get() is None
        await store.set(TOKEN)
        assert await store.get() == TOKEN
