from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace

from orderboard.domain.errors import SnapshotValidationError
from orderboard.domain.snapshot import BoardSnapshot, Item, MutationRecord, diff, normalize, validate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapacityWarning:
    bucket_id: str
    capacity_limit: int
    item_count: int

    @property
    def message(self) -> str:
        return f"bucket {self.bucket_id} holds {self.item_count} items, limit {self.capacity_limit}"


@dataclass(frozen=True)
class MutationBatch:
    board_id: str
    base: BoardSnapshot
    proposed: BoardSnapshot
    mutations: tuple[MutationRecord, ...]
    warnings: tuple[CapacityWarning, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.mutations

    @property
    def base_revision(self) -> int:
        return self.base.revision


class Reconciler:
    """Pure planning: (previous snapshot, proposed snapshot) -> MutationBatch.

    Never touches storage. Validation that needs both snapshots lives here so
    the order model stays a plain data structure.
    """

    def plan(self, previous: BoardSnapshot, proposed: BoardSnapshot) -> MutationBatch:
        validate(proposed)
        known_buckets = set(previous.bucket_ids())
        for bucket_id, lane in proposed.lanes.items():
            if bucket_id not in known_buckets and lane:
                raise SnapshotValidationError(f"unknown bucket: {bucket_id}", bucket_id=bucket_id)

        placed: set[str] = set()
        lanes: dict[str, list[Item]] = {bucket_id: [] for bucket_id in previous.bucket_ids()}
        for bucket_id, lane in proposed.lanes.items():
            for item in lane:
                current = previous.locate(item.id)
                if current is None:
                    # deleted out-of-band since the caller last read the board
                    continue
                lanes[bucket_id].append(replace(current, bucket_id=bucket_id))
                placed.add(item.id)

        for item in previous.items():
            if item.id not in placed:
                lanes[item.bucket_id].append(item)

        resolved = normalize(
            BoardSnapshot.from_lanes(
                previous.board_id, previous.revision, previous.buckets, lanes, store_version=previous.store_version
            )
        )
        validate(resolved)
        return self._batch(previous, resolved, diff(previous, resolved))

    def plan_mutations(self, previous: BoardSnapshot, mutations: Sequence[MutationRecord]) -> MutationBatch:
        """Build a batch from an already computed mutation list.

        The records are replayed onto ``previous`` in their given order and the
        result is renormalized, so ``to_order`` values act as insertion slots.
        """
        proposed = previous
        for record in mutations:
            current = proposed.locate(record.item_id)
            if current is None:
                continue
            if current.bucket_id != record.from_bucket_id:
                raise SnapshotValidationError(
                    f"item {record.item_id} is not in bucket {record.from_bucket_id}",
                    bucket_id=record.from_bucket_id,
                    item_id=record.item_id,
                )
            proposed = proposed.move(record.item_id, record.to_bucket_id, record.to_order)
        return self.plan(previous, proposed)

    def _batch(
        self,
        previous: BoardSnapshot,
        resolved: BoardSnapshot,
        mutations: list[MutationRecord],
    ) -> MutationBatch:
        warnings: list[CapacityWarning] = []
        for bucket in resolved.buckets:
            count = len(resolved.lane(bucket.id))
            if bucket.capacity_limit is not None and count > bucket.capacity_limit:
                warnings.append(
                    CapacityWarning(bucket_id=bucket.id, capacity_limit=bucket.capacity_limit, item_count=count)
                )
        for warning in warnings:
            logger.info("board %s: %s", previous.board_id, warning.message)
        return MutationBatch(
            board_id=previous.board_id,
            base=previous,
            proposed=resolved,
            mutations=tuple(mutations),
            warnings=tuple(warnings),
        )
