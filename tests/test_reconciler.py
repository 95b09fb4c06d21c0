from __future__ import annotations

import pytest

from orderboard.domain.errors import SnapshotValidationError
from orderboard.domain.snapshot import BoardSnapshot, Bucket, Item, MutationRecord
from orderboard.services.reconciler import Reconciler

BUCKETS = (
    Bucket(id="todo", name="To Do", capacity_limit=2, position=0),
    Bucket(id="done", name="Done", position=1),
)


def _board(lanes: dict[str, list[str]], revision: int = 0) -> BoardSnapshot:
    return BoardSnapshot.from_lanes(
        "board-1",
        revision,
        BUCKETS,
        {
            bucket_id: [
                Item(id=item_id, bucket_id=bucket_id, order=index, title=f"Task {item_id}", revision=1)
                for index, item_id in enumerate(ids)
            ]
            for bucket_id, ids in lanes.items()
        },
    )


def _proposal(lanes: dict[str, list[str]], revision: int = 0) -> BoardSnapshot:
    return BoardSnapshot.from_lanes(
        "board-1",
        revision,
        BUCKETS,
        {
            bucket_id: [Item(id=item_id, bucket_id=bucket_id, order=index) for index, item_id in enumerate(ids)]
            for bucket_id, ids in lanes.items()
        },
    )


def test_plan_moves_item_and_renumbers_source_lane() -> None:
    previous = _board({"todo": ["A", "B", "C"], "done": []})
    batch = Reconciler().plan(previous, _proposal({"todo": ["A", "C"], "done": ["B"]}))

    assert [(item.id, item.order) for item in batch.proposed.lane("todo")] == [("A", 0), ("C", 1)]
    assert [(item.id, item.order) for item in batch.proposed.lane("done")] == [("B", 0)]
    assert batch.mutations == (
        MutationRecord("C", "todo", "todo", 2, 1),
        MutationRecord("B", "todo", "done", 1, 0),
    )
    assert [rec.item_id for rec in batch.mutations if rec.changes_bucket] == ["B"]
    assert batch.base is previous
    assert batch.base_revision == 0


def test_plan_keeps_stored_item_data() -> None:
    previous = _board({"todo": ["A", "B"], "done": []})
    batch = Reconciler().plan(previous, _proposal({"todo": ["B", "A"]}))
    moved = batch.proposed.locate("B")
    assert moved is not None
    assert moved.title == "Task B"
    assert moved.revision == 1


def test_identical_proposal_is_empty_batch() -> None:
    previous = _board({"todo": ["A", "B"], "done": ["C"]})
    batch = Reconciler().plan(previous, _proposal({"todo": ["A", "B"], "done": ["C"]}))
    assert batch.is_empty
    assert batch.mutations == ()


def test_items_left_out_of_proposal_stay_put() -> None:
    previous = _board({"todo": ["A", "B"], "done": ["C"]})
    batch = Reconciler().plan(previous, _proposal({"done": ["A", "C"]}))
    assert [item.id for item in batch.proposed.lane("todo")] == ["B"]
    assert [item.id for item in batch.proposed.lane("done")] == ["A", "C"]
    assert len(batch.proposed) == 3


def test_ids_deleted_out_of_band_are_dropped() -> None:
    previous = _board({"todo": ["A"], "done": []})
    batch = Reconciler().plan(previous, _proposal({"todo": ["ghost", "A"]}))
    assert batch.proposed.locate("ghost") is None
    assert batch.is_empty


def test_unknown_bucket_is_rejected() -> None:
    previous = _board({"todo": ["A"], "done": []})
    with pytest.raises(SnapshotValidationError) as exc_info:
        Reconciler().plan(previous, _proposal({"archive": ["A"]}))
    assert exc_info.value.bucket_id == "archive"


def test_duplicate_id_in_proposal_is_rejected() -> None:
    previous = _board({"todo": ["A", "B"], "done": []})
    with pytest.raises(SnapshotValidationError, match="appears in both"):
        Reconciler().plan(previous, _proposal({"todo": ["A", "B"], "done": ["A"]}))


def test_capacity_limit_only_warns() -> None:
    previous = _board({"todo": ["A", "B"], "done": ["C"]})
    batch = Reconciler().plan(previous, _proposal({"todo": ["A", "C", "B"], "done": []}))
    assert not batch.is_empty
    assert len(batch.warnings) == 1
    warning = batch.warnings[0]
    assert (warning.bucket_id, warning.capacity_limit, warning.item_count) == ("todo", 2, 3)
    assert "limit 2" in warning.message


def test_plan_mutations_replays_records() -> None:
    previous = _board({"todo": ["A", "B", "C"], "done": []})
    batch = Reconciler().plan_mutations(previous, [MutationRecord("A", "todo", "done", 0, 0)])
    assert [item.id for item in batch.proposed.lane("todo")] == ["B", "C"]
    assert [item.id for item in batch.proposed.lane("done")] == ["A"]
    assert {rec.item_id for rec in batch.mutations} == {"A", "B", "C"}


def test_plan_mutations_rejects_wrong_source_bucket() -> None:
    previous = _board({"todo": ["A"], "done": ["B"]})
    with pytest.raises(SnapshotValidationError):
        Reconciler().plan_mutations(previous, [MutationRecord("B", "todo", "todo", 0, 0)])
