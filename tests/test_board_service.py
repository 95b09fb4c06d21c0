from __future__ import annotations

from collections.abc import Sequence

import pytest

from orderboard.domain.errors import NotFoundError, TransientStoreError
from orderboard.domain.models import AuditEvent
from orderboard.domain.snapshot import Bucket, Item
from orderboard.domain.state_machine import FailureKind, ReconcileStatus
from orderboard.infra.settings import EngineSettings
from orderboard.infra.task_store import TaskUpdate
from orderboard.services.board_service import BoardService
from orderboard.services.write_coordinator import Actor

BOARD = "board-1"
ACTOR = Actor(id="user-1")


class ListStore:
    def __init__(self) -> None:
        self.items = [
            Item(id="A", bucket_id="todo", order=0, title="A"),
            Item(id="B", bucket_id="todo", order=1, title="B"),
        ]
        self.updates: list[TaskUpdate] = []
        self.fail_reads = False
        self.version = 0

    def list_buckets(self, board_id: str) -> list[Bucket]:
        return [Bucket(id="todo", name="To Do", position=0), Bucket(id="done", name="Done", position=1)]

    def list_tasks(self, board_id: str) -> list[Item]:
        if self.fail_reads:
            raise TransientStoreError("db down")
        return list(self.items)

    def board_version(self, board_id: str) -> int:
        return self.version

    def bulk_update(
        self,
        board_id: str,
        updates: Sequence[TaskUpdate],
        *,
        expected_board_version: int | None = None,
    ) -> None:
        self.updates.extend(updates)
        self.version += 1
        by_id = {update.id: update for update in updates}
        self.items = [
            Item(id=item.id, bucket_id=by_id[item.id].bucket_id, order=by_id[item.id].order, title=item.title)
            if item.id in by_id
            else item
            for item in self.items
        ]


class ListAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def append(self, event: AuditEvent) -> None:
        self.events.append(event)

    def list_events(self, board_id: str, limit: int = 50) -> list[AuditEvent]:
        return list(reversed(self.events))[:limit]


@pytest.fixture()
def store() -> ListStore:
    return ListStore()


@pytest.fixture()
def service(store: ListStore) -> BoardService:
    return BoardService(
        store=store,
        audit=ListAuditSink(),
        settings=EngineSettings(lock_backend="local", lock_wait_seconds=0, store_timeout_seconds=5),
    )


def test_build_proposal_defaults_missing_orders(service: BoardService) -> None:
    proposed = service.build_proposal(BOARD, 0, {"todo": [("B", None), ("A", None)], "done": [("C", 7)]})
    assert [(item.id, item.order) for item in proposed.lane("todo")] == [("B", 0), ("A", 1)]
    assert [(item.id, item.order) for item in proposed.lane("done")] == [("C", 7)]
    assert proposed.revision == 0


def test_plan_does_not_write(service: BoardService, store: ListStore) -> None:
    proposed = service.build_proposal(BOARD, 0, {"todo": [("B", None), ("A", None)]})
    batch = service.plan(BOARD, proposed)
    assert [record.item_id for record in batch.mutations] == ["B", "A"]
    assert store.updates == []


def test_submit_reorder_applies_and_feeds_activity(service: BoardService, store: ListStore) -> None:
    proposed = service.build_proposal(BOARD, 0, {"done": [("A", None)]})
    result = service.submit_reorder(BOARD, proposed, ACTOR)

    assert result.status == ReconcileStatus.APPLIED
    assert {update.id for update in store.updates} == {"A", "B"}
    assert service.get_snapshot(BOARD).revision == 1
    assert [event.item_id for event in service.list_activity(BOARD)] == ["A", "B"]


def test_submit_reorder_on_old_revision_is_stale(service: BoardService, store: ListStore) -> None:
    proposed = service.build_proposal(BOARD, 4, {"todo": [("B", None), ("A", None)]})
    result = service.submit_reorder(BOARD, proposed, ACTOR)
    assert result.status == ReconcileStatus.STALE
    assert result.snapshot is not None and result.snapshot.revision == 0
    assert store.updates == []


def test_unchanged_proposal_on_old_revision_is_a_noop(service: BoardService, store: ListStore) -> None:
    proposed = service.build_proposal(BOARD, 4, {"todo": [("A", None), ("B", None)]})
    result = service.submit_reorder(BOARD, proposed, ACTOR)
    assert result.status == ReconcileStatus.APPLIED
    assert result.mutations == ()
    assert store.updates == []


def test_invalid_proposal_is_returned_not_raised(service: BoardService) -> None:
    proposed = service.build_proposal(BOARD, 0, {"archive": [("A", None)]})
    result = service.submit_reorder(BOARD, proposed, ACTOR)
    assert result.status == ReconcileStatus.INVALID
    assert "archive" in (result.reason or "")


def test_move_item(service: BoardService, store: ListStore) -> None:
    result = service.move_item(BOARD, "B", "done", 0, ACTOR)
    assert result.applied
    assert [item.id for item in service.get_snapshot(BOARD).lane("done")] == ["B"]

    assert service.move_item(BOARD, "A", "nowhere", 0, ACTOR).status == ReconcileStatus.INVALID
    with pytest.raises(NotFoundError):
        service.move_item(BOARD, "Z", "done", 0, ACTOR)


def test_unreadable_board_fails_transiently(service: BoardService, store: ListStore) -> None:
    store.fail_reads = True
    result = service.move_item(BOARD, "A", "done", 0, ACTOR)
    assert result.status == ReconcileStatus.FAILED
    assert result.failure == FailureKind.TRANSIENT


def test_refresh_invalidates_session(service: BoardService, store: ListStore) -> None:
    service.get_snapshot(BOARD)
    service.refresh(BOARD)
    assert service.session_state(BOARD) == "STALE"
    store.items = [Item(id="A", bucket_id="done", order=0, title="A")]
    assert [item.id for item in service.get_snapshot(BOARD).lane("done")] == ["A"]
    assert service.session_state(BOARD) == "READY"
