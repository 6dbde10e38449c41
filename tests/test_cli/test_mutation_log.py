"""Tests for the device mutation log and its local projection."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.exc import OperationalError

from cli.clock import DeviceClock
from cli.local_store import LocalStore
from cli.mutation_log import MutationLog
from domain.entities import EntityKind
from domain.errors import EntityValidationError, PersistenceError
from domain.mutations import MutationOp, MutationRecord

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


class _FixedWall:
    """Wall clock stuck at one instant; the device clock must still advance."""

    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _task_record(fields: dict[str, Any], updated_at: int, origin: str = "dev-a") -> MutationRecord:
    return MutationRecord(
        entity=EntityKind.TASK,
        op=MutationOp.UPSERT,
        id="t1",
        updated_at=updated_at,
        origin_device=origin,
        fields=fields,
    )


@pytest.fixture
def store(tmp_path: Path) -> Iterator[LocalStore]:
    local = LocalStore(tmp_path / "device.db")
    yield local
    local.close()


@pytest.fixture
def log(store: LocalStore) -> MutationLog:
    return MutationLog(store, "dev-a", DeviceClock(wall=_FixedWall(1_000)))


class TestAppend:
    def test_upsert_is_logged_and_projected(self, store: LocalStore, log: MutationLog) -> None:
        record = log.record_upsert("Task", "t1", {"title": "Buy milk", "priority": "2"})

        assert record.updated_at == 1_000
        assert record.origin_device == "dev-a"
        assert dict(record.fields) == {"title": "Buy milk", "priority": 2}

        state = store.get_entity(EntityKind.TASK, "t1")
        assert state is not None
        assert state.fields == {"title": "Buy milk", "priority": 2}
        assert [p.record for p in log.entries()] == [record]

    def test_missing_id_is_minted(self, log: MutationLog) -> None:
        first = log.record_upsert("Task", None, {"title": "a"})
        second = log.record_upsert("Task", None, {"title": "b"})
        assert first.id
        assert first.id != second.id

    def test_timestamps_increase_within_one_millisecond(self, log: MutationLog) -> None:
        stamps = [log.record_upsert("Task", "t1", {"title": str(i)}).updated_at for i in range(3)]
        assert stamps == [1_000, 1_001, 1_002]

    def test_append_accepts_newer_external_record(self, store: LocalStore, log: MutationLog) -> None:
        log.record_upsert("Task", "t1", {"title": "a"})
        record = _task_record({"title": "b"}, 5_000)

        log.append(record)

        state = store.get_entity(EntityKind.TASK, "t1")
        assert state is not None
        assert state.fields == {"title": "b"}
        # Later writes are stamped after the appended record.
        assert log.record_upsert("Task", "t1", {"title": "c"}).updated_at == 5_001

    def test_append_refuses_record_older_than_device_clock(
        self, store: LocalStore, log: MutationLog
    ) -> None:
        log.record_upsert("Task", "t1", {"title": "newer"})

        with pytest.raises(EntityValidationError, match="device clock"):
            log.append(_task_record({"title": "older"}, 999))

        assert len(log.entries()) == 1
        state = store.get_entity(EntityKind.TASK, "t1")
        assert state is not None
        assert state.fields == {"title": "newer"}

    def test_append_refuses_record_from_another_device(self, log: MutationLog) -> None:
        with pytest.raises(EntityValidationError, match="cannot be queued"):
            log.append(_task_record({"title": "x"}, 5_000, origin="dev-b"))
        assert log.entries() == []

    def test_delete_is_projected_as_tombstone(self, store: LocalStore, log: MutationLog) -> None:
        log.record_upsert("Task", "t1", {"title": "a"})
        record = log.record_delete("Task", "t1")

        assert record.op is MutationOp.DELETE
        assert store.list_entities(EntityKind.TASK) == []
        state = store.get_entity(EntityKind.TASK, "t1")
        assert state is not None
        assert state.deleted_at == record.updated_at

    def test_invalid_fields_are_not_logged(self, store: LocalStore, log: MutationLog) -> None:
        with pytest.raises(EntityValidationError):
            log.record_upsert("Task", "t1", {"nope": 1})
        assert log.entries() == []
        assert store.get_entity(EntityKind.TASK, "t1") is None

    def test_failed_write_leaves_nothing_behind(
        self, store: LocalStore, log: MutationLog, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken_apply(*args: Any, **kwargs: Any) -> Any:
            raise OperationalError("UPDATE entities", {}, Exception("disk I/O error"))

        monkeypatch.setattr(store, "apply", broken_apply)

        with pytest.raises(PersistenceError):
            log.record_upsert("Task", "t1", {"title": "a"})

        monkeypatch.undo()
        assert log.entries() == []
        assert store.get_entity(EntityKind.TASK, "t1") is None


class TestDrain:
    def test_drain_preserves_insertion_order(self, log: MutationLog) -> None:
        ids = [log.record_upsert("Task", f"t{i}", {"title": str(i)}).id for i in range(5)]

        batch = log.drain(3)
        assert [p.record.id for p in batch] == ids[:3]
        assert [p.seq for p in batch] == sorted(p.seq for p in batch)
        # Draining does not remove anything.
        assert log.pending_count() == 5

    def test_acknowledge_removes_entries(self, log: MutationLog) -> None:
        for i in range(3):
            log.record_upsert("Task", f"t{i}", {"title": str(i)})
        seqs = [p.seq for p in log.drain(2)]

        assert log.acknowledge(seqs) == 2
        assert [p.record.id for p in log.drain(10)] == ["t2"]

    def test_acknowledge_unknown_seq_is_a_no_op(self, log: MutationLog) -> None:
        log.record_upsert("Task", "t1", {"title": "a"})
        assert log.acknowledge([999]) == 0
        assert log.acknowledge([]) == 0
        assert log.pending_count() == 1


class TestRejection:
    def test_rejected_entries_are_not_drained(self, log: MutationLog) -> None:
        log.record_upsert("Task", "t1", {"title": "a"})
        log.record_upsert("Task", "t2", {"title": "b"})
        first = log.drain(1)[0]

        log.reject(first.seq, "forbidden")

        assert [p.record.id for p in log.drain(10)] == ["t2"]
        assert log.pending_count() == 1
        rejected = log.rejected()
        assert [(p.seq, p.rejected_reason) for p in rejected] == [(first.seq, "forbidden")]

    def test_retry_requeues(self, log: MutationLog) -> None:
        log.record_upsert("Task", "t1", {"title": "a"})
        seq = log.drain(1)[0].seq
        log.reject(seq, "forbidden")

        log.retry([seq])

        assert log.rejected() == []
        assert [p.seq for p in log.drain(10)] == [seq]

    def test_discard_only_drops_rejected_entries(self, log: MutationLog) -> None:
        log.record_upsert("Task", "t1", {"title": "a"})
        log.record_upsert("Task", "t2", {"title": "b"})
        first, second = log.drain(2)
        log.reject(first.seq, "forbidden")

        assert log.discard([first.seq, second.seq]) == 1
        assert [p.seq for p in log.entries()] == [second.seq]


class TestReplay:
    def test_replay_rebuilds_projection(self, store: LocalStore, log: MutationLog) -> None:
        log.record_upsert("Task", "t1", {"title": "a", "notes": "n"})
        log.record_upsert("Task", "t1", {"title": "b"})
        log.record_upsert("Project", "p1", {"name": "Home"})
        log.record_delete("Project", "p1")
        before_task = store.get_entity(EntityKind.TASK, "t1")
        before_project = store.get_entity(EntityKind.PROJECT, "p1")

        with store.transaction() as session:
            store.clear_entities(session)
        assert store.get_entity(EntityKind.TASK, "t1") is None

        assert log.replay() == 4
        assert store.get_entity(EntityKind.TASK, "t1") == before_task
        assert store.get_entity(EntityKind.PROJECT, "p1") == before_project

    def test_log_survives_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "device.db"
        first = LocalStore(path)
        MutationLog(first, "dev-a").record_upsert("Task", "t1", {"title": "a"})
        first.close()

        reopened = LocalStore(path)
        try:
            entries = MutationLog(reopened, "dev-a").entries()
            assert [p.record.id for p in entries] == ["t1"]
            assert dict(entries[0].record.fields) == {"title": "a"}
        finally:
            reopened.close()
