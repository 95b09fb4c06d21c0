"""Immutable board snapshots and the diff between two of them.

A snapshot assigns every live item of a board to exactly one bucket and a
position inside it. Snapshots are never edited: every operation here returns
a new value, so a reader holding a reference always sees a consistent board.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from orderboard.domain.errors import NotFoundError, SnapshotValidationError


@dataclass(frozen=True)
class Bucket:
    id: str
    name: str = ""
    capacity_limit: int | None = None
    position: int = 0

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class Item:
    id: str
    bucket_id: str
    order: int
    title: str = ""
    revision: int = 0


@dataclass(frozen=True)
class MutationRecord:
    item_id: str
    from_bucket_id: str
    to_bucket_id: str
    from_order: int
    to_order: int

    @property
    def changes_bucket(self) -> bool:
        return self.from_bucket_id != self.to_bucket_id


@dataclass(frozen=True)
class BoardSnapshot:
    board_id: str
    revision: int
    buckets: tuple[Bucket, ...]
    lanes: Mapping[str, tuple[Item, ...]]
    store_version: int = field(default=0, compare=False)
    _index: Mapping[str, Item] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        lanes = {bucket.id: tuple(self.lanes.get(bucket.id, ())) for bucket in self.buckets}
        extra = [bucket_id for bucket_id in self.lanes if bucket_id not in lanes]
        buckets = list(self.buckets)
        for bucket_id in extra:
            lanes[bucket_id] = tuple(self.lanes[bucket_id])
            buckets.append(Bucket(id=bucket_id, position=len(buckets)))
        index: dict[str, Item] = {}
        for lane in lanes.values():
            for item in lane:
                index.setdefault(item.id, item)
        object.__setattr__(self, "buckets", tuple(buckets))
        object.__setattr__(self, "lanes", MappingProxyType(lanes))
        object.__setattr__(self, "_index", MappingProxyType(index))

    @classmethod
    def from_items(
        cls,
        board_id: str,
        revision: int,
        buckets: Iterable[Bucket],
        items: Iterable[Item],
        *,
        store_version: int = 0,
    ) -> BoardSnapshot:
        """Group flat store rows into lanes ordered by (order, id)."""
        grouped: dict[str, list[Item]] = {}
        for item in items:
            grouped.setdefault(item.bucket_id, []).append(item)
        lanes = {
            bucket_id: tuple(sorted(rows, key=lambda row: (row.order, row.id)))
            for bucket_id, rows in grouped.items()
        }
        return cls(
            board_id=board_id,
            revision=revision,
            buckets=tuple(buckets),
            lanes=lanes,
            store_version=store_version,
        )

    @classmethod
    def from_lanes(
        cls,
        board_id: str,
        revision: int,
        buckets: Iterable[Bucket],
        lanes: Mapping[str, Sequence[Item]],
        *,
        store_version: int = 0,
    ) -> BoardSnapshot:
        """Keep the caller's sequence order as given."""
        return cls(
            board_id=board_id,
            revision=revision,
            buckets=tuple(buckets),
            lanes={bucket_id: tuple(seq) for bucket_id, seq in lanes.items()},
            store_version=store_version,
        )

    def bucket_ids(self) -> list[str]:
        return [bucket.id for bucket in self.buckets]

    def bucket(self, bucket_id: str) -> Bucket | None:
        for bucket in self.buckets:
            if bucket.id == bucket_id:
                return bucket
        return None

    def lane(self, bucket_id: str) -> tuple[Item, ...]:
        return self.lanes.get(bucket_id, ())

    def items(self) -> Iterator[Item]:
        for bucket in self.buckets:
            yield from self.lanes[bucket.id]

    def item_ids(self) -> set[str]:
        return set(self._index)

    def locate(self, item_id: str) -> Item | None:
        return self._index.get(item_id)

    def __len__(self) -> int:
        return sum(len(lane) for lane in self.lanes.values())

    def placement(self) -> dict[str, tuple[str, int]]:
        return {item.id: (item.bucket_id, item.order) for item in self.items()}

    def with_revision(self, revision: int) -> BoardSnapshot:
        return replace(self, revision=revision)

    def progress(self, done_bucket_id: str = "done") -> int:
        """Percentage of items sitting in the done bucket, rounded half up."""
        total = len(self)
        if total == 0:
            return 0
        return int(len(self.lane(done_bucket_id)) * 100 / total + 0.5)

    def move(self, item_id: str, bucket_id: str, position: int) -> BoardSnapshot:
        """Return the proposed snapshot for moving one item, position clamped to the lane."""
        item = self.locate(item_id)
        if item is None:
            raise NotFoundError(f"item not found: {item_id}")
        if self.bucket(bucket_id) is None:
            raise SnapshotValidationError(f"unknown bucket: {bucket_id}", bucket_id=bucket_id)
        lanes = {key: [row for row in lane if row.id != item_id] for key, lane in self.lanes.items()}
        target = lanes[bucket_id]
        index = max(0, min(position, len(target)))
        target.insert(index, replace(item, bucket_id=bucket_id))
        return normalize(
            BoardSnapshot.from_lanes(
                self.board_id, self.revision, self.buckets, lanes, store_version=self.store_version
            )
        )


def validate(snapshot: BoardSnapshot) -> None:
    seen: dict[str, str] = {}
    for bucket_id, lane in snapshot.lanes.items():
        orders: set[int] = set()
        for item in lane:
            if item.id in seen:
                raise SnapshotValidationError(
                    f"item {item.id} appears in both {seen[item.id]} and {bucket_id}",
                    bucket_id=bucket_id,
                    item_id=item.id,
                )
            seen[item.id] = bucket_id
            if item.order < 0:
                raise SnapshotValidationError(
                    f"negative order {item.order} for item {item.id}",
                    bucket_id=bucket_id,
                    item_id=item.id,
                )
            if item.order in orders:
                raise SnapshotValidationError(
                    f"duplicate order {item.order} in bucket {bucket_id}",
                    bucket_id=bucket_id,
                    item_id=item.id,
                )
            orders.add(item.order)


def normalize(snapshot: BoardSnapshot) -> BoardSnapshot:
    """Derive every order from sequence position (dense 0..N-1 per bucket)."""
    lanes = {
        bucket_id: tuple(
            item if item.order == index and item.bucket_id == bucket_id
            else replace(item, bucket_id=bucket_id, order=index)
            for index, item in enumerate(lane)
        )
        for bucket_id, lane in snapshot.lanes.items()
    }
    return BoardSnapshot.from_lanes(
        snapshot.board_id, snapshot.revision, snapshot.buckets, lanes, store_version=snapshot.store_version
    )


def _destination_key(snapshot: BoardSnapshot) -> dict[str, int]:
    return {bucket.id: rank for rank, bucket in enumerate(snapshot.buckets)}


def diff(previous: BoardSnapshot, proposed: BoardSnapshot) -> list[MutationRecord]:
    """Per-item moves from ``previous`` to ``proposed``.

    Ids missing from either side are ignored. Records are grouped by
    destination bucket in board order, then ascending ``to_order``.
    """
    records: list[MutationRecord] = []
    for item in proposed.items():
        before = previous.locate(item.id)
        if before is None:
            continue
        if before.bucket_id == item.bucket_id and before.order == item.order:
            continue
        records.append(
            MutationRecord(
                item_id=item.id,
                from_bucket_id=before.bucket_id,
                to_bucket_id=item.bucket_id,
                from_order=before.order,
                to_order=item.order,
            )
        )
    rank = _destination_key(proposed)
    records.sort(key=lambda rec: (rank.get(rec.to_bucket_id, len(rank)), rec.to_bucket_id, rec.to_order, rec.item_id))
    return records
