"""
Unit tests for checkpoint stores
"""

import json
import pytest
from core.exceptions import (
    CheckpointCorrupt,
    CheckpointError,
    CheckpointMismatch,
    CheckpointNotFound,
)
from migration.checkpoints import FileCheckpointStore, SQLCheckpointStore, checkpoint_id_for
from schemas.checkpoint import Checkpoint


@pytest.fixture
def checkpoint_dir(tmp_path):
    return tmp_path / "checkpoints"


@pytest.fixture
def file_store(checkpoint_dir, test_settings):
    return FileCheckpointStore("run-a", directory=checkpoint_dir, settings=test_settings)


class TestFileCheckpointStore:
    """Test the JSON file backend"""

    @pytest.mark.asyncio
    async def test_create_and_load(self, file_store):
        """Test a saved checkpoint loads back equal"""
        saved = await file_store.create(
            cursor=20,
            success_count=18,
            failure_count=2,
            current_batch_index=2,
            memory={"current_usage": 1024},
            state={"status": "running"},
        )

        loaded = await file_store.load(saved.id)

        assert saved.id == "run-a-000000"
        assert loaded == saved
        assert loaded.processed == 20
        assert loaded.status == "running"

    @pytest.mark.asyncio
    async def test_atomic_write_leaves_no_temp_files(self, file_store, checkpoint_dir):
        """Test only the final document remains on disk"""
        await file_store.create(cursor=1)

        names = [p.name for p in checkpoint_dir.iterdir()]
        assert names == ["run-a_000000.json"]

    @pytest.mark.asyncio
    async def test_latest_and_list_order(self, file_store):
        """Test latest() is the newest sequence and list() is creation ordered"""
        for cursor in (10, 20, 30):
            await file_store.create(cursor=cursor)

        latest = await file_store.latest()
        listed = await file_store.list()

        assert latest.cursor == 30
        assert [c.sequence for c in listed] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_empty_store(self, file_store):
        """Test latest() on a run without checkpoints"""
        assert await file_store.latest() is None
        assert await file_store.list() == []

    @pytest.mark.asyncio
    async def test_retention(self, checkpoint_dir, test_settings):
        """Test only the most recent K checkpoints are kept"""
        store = FileCheckpointStore("run-a", directory=checkpoint_dir, retention=3, settings=test_settings)
        for cursor in range(5):
            await store.create(cursor=cursor)

        listed = await store.list()
        assert [c.sequence for c in listed] == [2, 3, 4]
        assert len(list(checkpoint_dir.glob("*.json"))) == 3

    @pytest.mark.asyncio
    async def test_cursor_is_monotonic(self, file_store):
        """Test a backwards cursor is rejected"""
        await file_store.create(cursor=10)

        with pytest.raises(CheckpointError):
            await file_store.create(cursor=5)

        assert (await file_store.latest()).cursor == 10

    @pytest.mark.asyncio
    async def test_sequence_continues_across_instances(self, checkpoint_dir, test_settings):
        """Test a reopened store keeps numbering after the newest checkpoint"""
        first = FileCheckpointStore("run-a", directory=checkpoint_dir, settings=test_settings)
        await first.create(cursor=10)
        await first.create(cursor=20)

        second = FileCheckpointStore("run-a", directory=checkpoint_dir, settings=test_settings)
        created = await second.create(cursor=30)

        assert created.sequence == 2
        with pytest.raises(CheckpointError):
            await second.create(cursor=15)

    @pytest.mark.asyncio
    async def test_load_other_run(self, file_store, checkpoint_dir, test_settings):
        """Test loading a checkpoint of another run fails with a mismatch"""
        other = FileCheckpointStore("run-b", directory=checkpoint_dir, settings=test_settings)
        foreign = await other.create(cursor=5)

        with pytest.raises(CheckpointMismatch):
            await file_store.load(foreign.id)

    @pytest.mark.asyncio
    async def test_save_other_run(self, file_store):
        """Test saving a checkpoint of another run fails with a mismatch"""
        foreign = Checkpoint(id=checkpoint_id_for("run-b", 0), run_id="run-b", sequence=0, cursor=0)

        with pytest.raises(CheckpointMismatch):
            await file_store.save(foreign)

    @pytest.mark.asyncio
    async def test_runs_are_isolated(self, file_store, checkpoint_dir, test_settings):
        """Test list() and latest() ignore other runs sharing the directory"""
        other = FileCheckpointStore("run-b", directory=checkpoint_dir, settings=test_settings)
        await other.create(cursor=99)
        await file_store.create(cursor=1)

        assert [c.run_id for c in await file_store.list()] == ["run-a"]
        assert (await file_store.latest()).cursor == 1

    @pytest.mark.asyncio
    async def test_not_found(self, file_store):
        """Test unknown and malformed ids"""
        with pytest.raises(CheckpointNotFound):
            await file_store.load("run-a-000042")
        with pytest.raises(CheckpointNotFound):
            await file_store.load("garbage")

    @pytest.mark.asyncio
    async def test_corrupt(self, file_store, checkpoint_dir):
        """Test unparseable and incomplete documents"""
        (checkpoint_dir / "run-a_000000.json").write_text("{not json")
        (checkpoint_dir / "run-a_000001.json").write_text(json.dumps({"id": "run-a-000001"}))

        with pytest.raises(CheckpointCorrupt):
            await file_store.load("run-a-000000")
        with pytest.raises(CheckpointCorrupt):
            await file_store.load("run-a-000001")

        # Unreadable files are skipped when listing
        assert await file_store.latest() is None

    @pytest.mark.asyncio
    async def test_delete_run(self, file_store, checkpoint_dir):
        """Test every checkpoint of the run is removed"""
        await file_store.create(cursor=1)
        await file_store.create(cursor=2)

        await file_store.delete_run()

        assert await file_store.list() == []
        created = await file_store.create(cursor=0)
        assert created.sequence == 0

    @pytest.mark.asyncio
    async def test_recovery_report(self, file_store):
        """Test resume summary and recommendations"""
        await file_store.create(
            cursor=30,
            success_count=15,
            failure_count=15,
            current_batch_index=3,
            total_batches=6,
            memory={"current_usage": 100, "peak_usage": 600 * 1024 * 1024},
            state={"status": "aborted"},
        )

        report = await file_store.recovery_report()

        assert report["resumable"] is True
        assert report["checkpoint_id"] == "run-a-000000"
        assert report["success_rate"] == 50.0
        assert report["progress_percentage"] == 50.0
        assert len(report["recommendations"]) == 3

    @pytest.mark.asyncio
    async def test_recovery_report_without_checkpoints(self, file_store):
        """Test a run with nothing to resume"""
        report = await file_store.recovery_report()
        assert report["resumable"] is False

    @pytest.mark.asyncio
    async def test_metrics(self, file_store):
        """Test rate and memory trend need at least two checkpoints"""
        await file_store.create(cursor=10, success_count=10, memory={"current_usage": 100})
        assert (await file_store.metrics())["memory_trend"] == "unknown"

        await file_store.create(cursor=20, success_count=20, memory={"current_usage": 200})
        metrics = await file_store.metrics()
        assert metrics["checkpoints"] == 2
        assert metrics["memory_trend"] == "rapidly_increasing"


class TestSQLCheckpointStore:
    """Test the database backend"""

    @pytest.mark.asyncio
    async def test_create_and_load(self, session_maker, test_settings):
        """Test a saved row loads back as the same checkpoint"""
        store = SQLCheckpointStore("run-a", session_maker=session_maker, settings=test_settings)
        saved = await store.create(
            cursor=40,
            success_count=39,
            failure_count=1,
            memory={"current_usage": 2048},
            state={"status": "running", "source": "users.csv"},
        )

        loaded = await store.load(saved.id)

        assert loaded.id == saved.id
        assert loaded.cursor == 40
        assert loaded.memory == {"current_usage": 2048}
        assert loaded.state["source"] == "users.csv"
        assert loaded.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_retention_and_latest(self, session_maker, test_settings):
        """Test pruning and newest-first resolution"""
        store = SQLCheckpointStore("run-a", session_maker=session_maker, retention=2, settings=test_settings)
        for cursor in (10, 20, 30, 40):
            await store.create(cursor=cursor)

        listed = await store.list()
        assert [c.cursor for c in listed] == [30, 40]
        assert (await store.latest()).cursor == 40

    @pytest.mark.asyncio
    async def test_errors(self, session_maker, test_settings):
        """Test not-found, mismatch and monotonic cursor"""
        store = SQLCheckpointStore("run-a", session_maker=session_maker, settings=test_settings)
        other = SQLCheckpointStore("run-b", session_maker=session_maker, settings=test_settings)
        foreign = await other.create(cursor=1)
        await store.create(cursor=10)

        with pytest.raises(CheckpointNotFound):
            await store.load("run-a-000099")
        with pytest.raises(CheckpointMismatch):
            await store.load(foreign.id)
        with pytest.raises(CheckpointError):
            await store.create(cursor=3)
