"""
Unit tests for the rollback log
"""

import asyncio
import pytest
from core.exceptions import RollbackError
from migration.rollback import (
    FileOperationStore,
    InMemoryOperationStore,
    RollbackLog,
    SQLOperationStore,
)
from models.base import OperationType
from schemas.operation import Operation


def insert_op(target, row):
    return Operation(type=OperationType.INSERT, target=target, key={"id": row["id"]}, after=row)


async def migrate_inserts(log, memory_target, target, rows):
    """Apply inserts to the target and record them"""
    for row in rows:
        memory_target.put(target, {"id": row["id"]}, row)
        await log.record(insert_op(target, row))


class TestRecording:
    """Test operation recording and ordering"""

    @pytest.mark.asyncio
    async def test_record_stamps_run_and_sequence(self, test_settings):
        """Test recorded operations carry run, worker and increasing sequence"""
        log = RollbackLog("run-1", settings=test_settings)

        first = await log.record(insert_op("users", {"id": 1}))
        second = await log.record(insert_op("users", {"id": 2}))

        assert first.run_id == "run-1"
        assert (first.sequence, second.sequence) == (0, 1)
        assert [op.id for op in await log.operations()] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_original_operation_untouched(self, test_settings):
        """Test recording returns a stamped copy"""
        log = RollbackLog("run-1", settings=test_settings)
        operation = insert_op("users", {"id": 1})

        stamped = await log.record(operation)

        assert operation.run_id is None
        assert stamped.id == operation.id

    @pytest.mark.asyncio
    async def test_worker_segments_merge(self, test_settings):
        """Test each worker numbers its own segment and reads merge them"""
        log = RollbackLog("run-1", settings=test_settings)
        other = log.segment(1)

        a = await log.record(insert_op("users", {"id": 1}))
        b = await other.record(insert_op("users", {"id": 2}))
        c = await log.record(insert_op("users", {"id": 3}))

        assert (a.worker_id, b.worker_id, c.worker_id) == (0, 1, 0)
        assert (a.sequence, b.sequence, c.sequence) == (0, 0, 1)
        assert {op.id for op in await log.operations()} == {a.id, b.id, c.id}


class TestRollback:
    """Test undo of recorded operations"""

    @pytest.mark.asyncio
    async def test_inserts_round_trip(self, memory_target, test_settings):
        """Test rolling back N inserts restores the original row count"""
        memory_target.put("users", {"id": 100}, {"id": 100, "name": "existing"})
        before = len(memory_target.table("users"))
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)

        await migrate_inserts(log, memory_target, "users", [{"id": i, "name": f"u{i}"} for i in range(1, 6)])
        report = await log.rollback()

        assert report.success is True
        assert report.reverted == 5
        assert len(memory_target.table("users")) - before == 0
        assert memory_target.get("users", {"id": 100}) == {"id": 100, "name": "existing"}

    @pytest.mark.asyncio
    async def test_updates_restore_before_image(self, memory_target, test_settings):
        """Test rolling back updates restores every mutated field"""
        originals = {i: {"id": i, "name": f"orig{i}", "status": "old"} for i in range(1, 4)}
        for i, row in originals.items():
            memory_target.put("users", {"id": i}, row)
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)

        for i, row in originals.items():
            updated = {**row, "name": f"new{i}", "status": "new"}
            memory_target.put("users", {"id": i}, updated)
            await log.record(Operation(
                type=OperationType.UPDATE, target="users", key={"id": i}, before=row, after=updated
            ))

        report = await log.rollback()

        assert report.success is True
        for i, row in originals.items():
            assert memory_target.get("users", {"id": i}) == row

    @pytest.mark.asyncio
    async def test_delete_is_reinserted(self, memory_target, test_settings):
        """Test a delete with a before-image is reinserted"""
        row = {"id": 7, "name": "gone"}
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)
        await log.record(Operation(type=OperationType.DELETE, target="users", key={"id": 7}, before=row))

        report = await log.rollback()

        assert report.success is True
        assert memory_target.get("users", {"id": 7}) == row

    @pytest.mark.asyncio
    async def test_newest_first(self, memory_target, test_settings):
        """Test operations are undone in reverse order"""
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}, {"id": 2}, {"id": 3}])
        recorded = await log.operations()

        report = await log.rollback()

        assert [e.operation_id for e in report.entries] == [op.id for op in reversed(recorded)]

    @pytest.mark.asyncio
    async def test_repeated_rollback_is_noop(self, memory_target, test_settings):
        """Test inverse records prevent reverting twice"""
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}, {"id": 2}])

        await log.rollback()
        again = await log.rollback()

        inverses = [op for op in await log.operations() if op.is_inverse]
        assert again.operations_considered == 0
        assert len(inverses) == 2
        assert {op.type for op in inverses} == {OperationType.DELETE.value}

    @pytest.mark.asyncio
    async def test_unsafe_operation_reported(self, memory_target, test_settings):
        """Test operations without inversion data are flagged, others still reverted"""
        memory_target.put("users", {"id": 1}, {"id": 1, "name": "x"})
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 2}])
        await log.record(Operation(type=OperationType.UPDATE, target="users", key={"id": 1}, after={"name": "y"}))

        report = await log.rollback()

        assert report.success is False
        assert report.unsafe == 1
        assert report.reverted == 1
        unsafe = [e for e in report.entries if e.status == "unsafe"][0]
        assert unsafe.could_not_safely_invert is True
        assert memory_target.get("users", {"id": 2}) is None

    @pytest.mark.asyncio
    async def test_manual_aborts_on_fatal_error(self, memory_target, test_settings):
        """Test a missing destination table stops manual replay"""
        log = RollbackLog("run-1", target=memory_target, mode="manual", settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}])
        await migrate_inserts(log, memory_target, "orders", [{"id": 1}])
        await migrate_inserts(log, memory_target, "users", [{"id": 2}])
        memory_target.fail_with["orders"] = RuntimeError("Table 'orders' doesn't exist")

        report = await log.rollback()

        assert report.aborted is True
        assert report.reverted == 1
        assert report.failed == 1
        assert [e.status for e in report.entries] == ["reverted", "failed", "skipped"]
        assert report.entries[-1].error == "rollback aborted"
        assert memory_target.get("users", {"id": 1}) is not None
        assert memory_target.get("users", {"id": 2}) is None

    @pytest.mark.asyncio
    async def test_manual_continues_after_recoverable_error(self, memory_target, test_settings):
        """Test non-fatal failures are recorded and replay continues"""
        log = RollbackLog("run-1", target=memory_target, mode="manual", settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}])
        await migrate_inserts(log, memory_target, "orders", [{"id": 1}])
        memory_target.fail_with["orders"] = RuntimeError("temporary glitch")

        report = await log.rollback()

        assert report.aborted is False
        assert report.success is False
        assert report.failed == 1
        assert report.reverted == 1
        assert memory_target.get("users", {"id": 1}) is None

    @pytest.mark.asyncio
    async def test_manual_reports_unlogged_inverse(self, memory_target, test_settings):
        """Test an undo whose inverse cannot be recorded is failed and replay continues"""

        class UnloggedOrders(InMemoryOperationStore):
            async def append(self, operation):
                if operation.is_inverse and operation.target == "orders":
                    raise OSError("disk full")
                await super().append(operation)

        log = RollbackLog("run-1", store=UnloggedOrders(), target=memory_target, mode="manual", settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}])
        await migrate_inserts(log, memory_target, "orders", [{"id": 1}])

        report = await log.rollback()

        assert report.aborted is False
        assert report.failed == 1
        assert report.reverted == 1
        assert [e.status for e in report.entries] == ["failed", "reverted"]
        assert report.entries[0].error.startswith("reverted but not logged")
        assert memory_target.get("orders", {"id": 1}) is None
        assert memory_target.get("users", {"id": 1}) is None

    @pytest.mark.asyncio
    async def test_transactional_success(self, transactional_target, test_settings):
        """Test transactional replay records inverses after commit"""
        log = RollbackLog("run-1", target=transactional_target, mode="transactional", settings=test_settings)
        await migrate_inserts(log, transactional_target, "users", [{"id": 1}, {"id": 2}])

        report = await log.rollback()

        assert report.mode == "transactional"
        assert report.success is True
        assert report.reverted == 2
        assert transactional_target.table("users") == {}

    @pytest.mark.asyncio
    async def test_transactional_failure_reverts_everything(self, transactional_target, test_settings):
        """Test a failing transactional rollback leaves the target untouched"""
        log = RollbackLog("run-1", target=transactional_target, mode="transactional", settings=test_settings)
        await migrate_inserts(log, transactional_target, "users", [{"id": 1}])
        await migrate_inserts(log, transactional_target, "orders", [{"id": 1}])
        await migrate_inserts(log, transactional_target, "users", [{"id": 2}])
        transactional_target.fail_with["orders"] = RuntimeError("constraint violation")

        report = await log.rollback()

        assert report.aborted is True
        assert report.success is False
        assert [e.status for e in report.entries] == ["skipped", "failed", "skipped"]
        assert report.entries[-1].error == "rollback aborted"
        assert transactional_target.get("users", {"id": 1}) is not None
        assert transactional_target.get("users", {"id": 2}) is not None
        assert not any(op.is_inverse for op in await log.operations())

        # Nothing was marked reverted, so a later attempt reconsiders every operation
        del transactional_target.fail_with["orders"]
        retry = await log.rollback()
        assert retry.success is True
        assert retry.reverted == 3

    @pytest.mark.asyncio
    async def test_transactional_falls_back_to_manual(self, memory_target, test_settings):
        """Test targets without transactions use manual replay"""
        log = RollbackLog("run-1", target=memory_target, mode="transactional", settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}])

        report = await log.rollback()

        assert report.mode == "manual"
        assert report.success is True

    @pytest.mark.asyncio
    async def test_rollback_to_point(self, memory_target, test_settings):
        """Test only operations after the point are undone"""
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}, {"id": 2}])
        point = await log.create_point("after first batch")
        await migrate_inserts(log, memory_target, "users", [{"id": 3}, {"id": 4}])

        report = await log.rollback(since_point_id=point.id)

        assert point.operations_count == 2
        assert report.reverted == 2
        assert sorted(k[0][1] for k in memory_target.table("users")) == [1, 2]

    @pytest.mark.asyncio
    async def test_unknown_point(self, memory_target, test_settings):
        """Test an unknown point id is rejected"""
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)
        with pytest.raises(RollbackError):
            await log.rollback(since_point_id="nope")

    @pytest.mark.asyncio
    async def test_rollback_selected_operations(self, memory_target, test_settings):
        """Test undoing an explicit subset"""
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}, {"id": 2}])
        first = (await log.operations())[0]

        report = await log.rollback_operations([first.id, "unknown"])

        assert report.reverted == 1
        assert memory_target.get("users", {"id": 1}) is None
        assert memory_target.get("users", {"id": 2}) is not None

    @pytest.mark.asyncio
    async def test_requires_target(self, test_settings):
        """Test rollback without a target fails"""
        log = RollbackLog("run-1", settings=test_settings)
        await log.record(insert_op("users", {"id": 1}))
        with pytest.raises(RollbackError):
            await log.rollback()


class TestRollbackPlan:
    """Test dry-run planning"""

    @pytest.mark.asyncio
    async def test_plan(self, memory_target, test_settings):
        """Test counts, complexity, warnings and risks"""
        log = RollbackLog("run-1", target=memory_target, settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}])
        await log.record(Operation(type=OperationType.UPDATE, target="orders", key={"id": 5}, after={"x": 1}))

        plan = await log.plan()

        assert plan.total_operations == 2
        assert plan.operations_by_type == {"insert": 1, "update": 1}
        assert plan.targets == ["orders", "users"]
        assert plan.complexity == "moderate"
        assert len(plan.warnings) == 1
        assert plan.steps[0]["action"] == "restore"
        assert plan.steps[0]["safe"] is False
        assert any("before-images" in risk for risk in plan.risks)
        # planning never touches the target
        assert memory_target.get("users", {"id": 1}) is not None

    @pytest.mark.asyncio
    async def test_empty_plan(self, test_settings):
        """Test nothing to undo"""
        plan = await RollbackLog("run-1", settings=test_settings).plan()
        assert plan.complexity == "none"
        assert plan.steps == []


class TestOperationStores:
    """Test durable operation stores"""

    @pytest.mark.asyncio
    async def test_file_store_survives_reopen(self, tmp_path, memory_target, test_settings):
        """Test a new log instance sees earlier operations and keeps numbering"""
        directory = tmp_path / "ops"
        log = RollbackLog("run-1", store=FileOperationStore(directory), target=memory_target, settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1}, {"id": 2}])

        reopened = RollbackLog("run-1", store=FileOperationStore(directory), target=memory_target, settings=test_settings)
        third = await reopened.record(insert_op("users", {"id": 3}))

        assert third.sequence == 2
        assert len(await reopened.operations()) == 3

    @pytest.mark.asyncio
    async def test_file_store_skips_truncated_line(self, tmp_path):
        """Test a partial trailing line is ignored"""
        store = FileOperationStore(tmp_path / "ops")
        log = RollbackLog("run-1", store=store)
        await log.record(insert_op("users", {"id": 1}))

        with open(store.segment_path("run-1", 0), "a", encoding="utf-8") as f:
            f.write('{"id": "abc", "type": "ins')

        assert len(await store.list("run-1")) == 1

    @pytest.mark.asyncio
    async def test_file_store_segments(self, tmp_path):
        """Test one segment file per worker"""
        store = FileOperationStore(tmp_path / "ops")
        log = RollbackLog("run-1", store=store)
        await log.record(insert_op("users", {"id": 1}))
        await log.segment(3).record(insert_op("users", {"id": 2}))

        assert store.segment_path("run-1", 0).exists()
        assert store.segment_path("run-1", 3).exists()
        assert await store.max_sequence("run-1", 3) == 0
        assert await store.max_sequence("run-1", 9) == -1

    @pytest.mark.asyncio
    async def test_file_store_concurrent_segments(self, tmp_path):
        """Test workers appending at the same time each keep a complete segment"""
        store = FileOperationStore(tmp_path / "ops")
        log = RollbackLog("run-1", store=store)

        async def write(worker_id):
            segment = log.segment(worker_id)
            for i in range(10):
                await segment.record(insert_op("users", {"id": worker_id * 100 + i}))

        await asyncio.gather(write(1), write(2))

        operations = await store.list("run-1")
        assert len(operations) == 20
        assert [op.sequence for op in operations if op.worker_id == 2] == list(range(10))
        assert set(store._locks) == {store.segment_path("run-1", 1), store.segment_path("run-1", 2)}

    @pytest.mark.asyncio
    async def test_in_memory_store_isolates_runs(self):
        """Test runs do not see each other's operations"""
        store = InMemoryOperationStore()
        await RollbackLog("a", store=store).record(insert_op("users", {"id": 1}))
        assert await store.list("b") == []

    @pytest.mark.asyncio
    async def test_sql_store(self, session_maker, memory_target, test_settings):
        """Test database persistence of operations and their undo"""
        store = SQLOperationStore(session_maker=session_maker)
        log = RollbackLog("run-1", store=store, target=memory_target, settings=test_settings)
        await migrate_inserts(log, memory_target, "users", [{"id": 1, "name": "Ann"}, {"id": 2, "name": "Bo"}])

        listed = await store.list("run-1")
        assert [op.after["name"] for op in listed] == ["Ann", "Bo"]
        assert await store.max_sequence("run-1", 0) == 1

        report = await log.rollback()
        assert report.reverted == 2
        assert memory_target.table("users") == {}
        assert len(await store.list("run-1")) == 4
