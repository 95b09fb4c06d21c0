from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from orderboard.domain.errors import SnapshotValidationError, StoreError
from orderboard.domain.models import AuditEventRecord
from orderboard.domain.snapshot import BoardSnapshot, Item
from orderboard.domain.state_machine import ReconcileStatus
from orderboard.infra.audit import DEFAULT_ACTIVITY_LIMIT, AuditSink, SqlAuditSink
from orderboard.infra.events import EventBus
from orderboard.infra.locks import LockProvider, build_lock_provider
from orderboard.infra.settings import EngineSettings, get_settings
from orderboard.infra.task_store import SqlTaskStore, TaskStore
from orderboard.services.board_session import BoardSessionRegistry
from orderboard.services.reconciler import MutationBatch, Reconciler
from orderboard.services.write_coordinator import Actor, ReconcileResult, WriteCoordinator, failed_result

logger = logging.getLogger(__name__)


class BoardService:
    def __init__(
        self,
        *,
        store: TaskStore | None = None,
        audit: AuditSink | None = None,
        settings: EngineSettings | None = None,
        locks: LockProvider | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store or SqlTaskStore()
        self._audit = audit or SqlAuditSink()
        self._sessions = BoardSessionRegistry(self._store, bus=bus)
        self._reconciler = Reconciler()
        self._coordinator = WriteCoordinator(
            self._sessions,
            self._store,
            self._audit,
            locks=locks or build_lock_provider(self._settings),
            settings=self._settings,
            bus=bus,
        )

    @property
    def coordinator(self) -> WriteCoordinator:
        return self._coordinator

    def get_snapshot(self, board_id: str) -> BoardSnapshot:
        return self._sessions.get(board_id).snapshot()

    def session_state(self, board_id: str) -> str:
        return self._sessions.get(board_id).state

    def plan(self, board_id: str, proposed: BoardSnapshot) -> MutationBatch:
        return self._reconciler.plan(self.get_snapshot(board_id), proposed)

    def build_proposal(
        self,
        board_id: str,
        revision: int,
        lanes: Mapping[str, Sequence[tuple[str, int | None]]],
    ) -> BoardSnapshot:
        """Turn caller lanes of (item id, optional order) into a proposed snapshot.

        Missing orders default to the sequence position.
        """
        current = self.get_snapshot(board_id)
        proposed_lanes = {
            bucket_id: [
                Item(id=item_id, bucket_id=bucket_id, order=index if order is None else order)
                for index, (item_id, order) in enumerate(entries)
            ]
            for bucket_id, entries in lanes.items()
        }
        return BoardSnapshot.from_lanes(board_id, revision, current.buckets, proposed_lanes)

    def submit_reorder(
        self,
        board_id: str,
        proposed: BoardSnapshot,
        actor: Actor,
        *,
        wait_seconds: float | None = None,
    ) -> ReconcileResult:
        try:
            previous = self.get_snapshot(board_id)
        except StoreError as exc:
            return failed_result(board_id, exc)
        try:
            batch = self._reconciler.plan(previous, proposed)
        except SnapshotValidationError as exc:
            logger.info("board %s: rejected proposal from %s: %s", board_id, actor.id, exc)
            return ReconcileResult(status=ReconcileStatus.INVALID, board_id=board_id, reason=str(exc))

        if proposed.revision != previous.revision and not batch.is_empty:
            return ReconcileResult(
                status=ReconcileStatus.STALE,
                board_id=board_id,
                batch=batch,
                snapshot=previous,
                reason=f"proposal based on revision {proposed.revision}, current is {previous.revision}",
            )
        return self._coordinator.apply(board_id, batch, actor, wait_seconds=wait_seconds)

    def move_item(
        self,
        board_id: str,
        item_id: str,
        bucket_id: str,
        position: int,
        actor: Actor,
        *,
        wait_seconds: float | None = None,
    ) -> ReconcileResult:
        try:
            current = self.get_snapshot(board_id)
        except StoreError as exc:
            return failed_result(board_id, exc)
        try:
            proposed = current.move(item_id, bucket_id, position)
        except SnapshotValidationError as exc:
            return ReconcileResult(status=ReconcileStatus.INVALID, board_id=board_id, reason=str(exc))
        return self.submit_reorder(board_id, proposed, actor, wait_seconds=wait_seconds)

    def refresh(self, board_id: str) -> None:
        self._sessions.get(board_id).invalidate("external refresh")

    def list_activity(self, board_id: str, limit: int = DEFAULT_ACTIVITY_LIMIT) -> list[AuditEventRecord]:
        return self._audit.list_events(board_id, limit=limit)
