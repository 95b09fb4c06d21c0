from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from functools import partial

from orderboard.domain.errors import (
    PermanentStoreError,
    StoreConflictError,
    StoreError,
    TransientStoreError,
)
from orderboard.domain.models import AuditEvent
from orderboard.domain.snapshot import BoardSnapshot, Item, MutationRecord
from orderboard.domain.state_machine import FailureKind, ReconcileStatus
from orderboard.infra.audit import AuditSink
from orderboard.infra.events import BOARD_REORDERED, EventBus
from orderboard.infra.locks import LocalLockProvider, LockProvider
from orderboard.infra.settings import EngineSettings
from orderboard.infra.task_store import TaskStore, TaskUpdate
from orderboard.services.board_session import BoardSession, BoardSessionRegistry
from orderboard.services.reconciler import MutationBatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    id: str
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class ReconcileResult:
    status: ReconcileStatus
    board_id: str
    batch: MutationBatch | None = None
    snapshot: BoardSnapshot | None = None
    failure: FailureKind | None = None
    reason: str | None = None

    @property
    def applied(self) -> bool:
        return self.status == ReconcileStatus.APPLIED

    @property
    def mutations(self) -> tuple[MutationRecord, ...]:
        if self.batch is None or not self.applied:
            return ()
        return self.batch.mutations


def failure_kind(exc: BaseException) -> FailureKind:
    if isinstance(exc, TransientStoreError | TimeoutError):
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


def failed_result(board_id: str, exc: BaseException, batch: MutationBatch | None = None) -> ReconcileResult:
    return ReconcileResult(
        status=ReconcileStatus.FAILED,
        board_id=board_id,
        batch=batch,
        failure=failure_kind(exc),
        reason=str(exc) or exc.__class__.__name__,
    )


class WriteCoordinator:
    """The only writer of persisted board state.

    One ``apply`` per board at a time. A busy board answers BUSY instead of
    queueing, a batch planned against an outdated snapshot answers STALE, and
    a failed write drops the cached snapshot rather than trying to undo
    anything.
    """

    def __init__(
        self,
        sessions: BoardSessionRegistry,
        store: TaskStore,
        audit: AuditSink,
        *,
        locks: LockProvider | None = None,
        settings: EngineSettings | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._sessions = sessions
        self._store = store
        self._audit = audit
        self._locks = locks or LocalLockProvider()
        self._settings = settings or EngineSettings()
        self._bus = bus
        self._executor = ThreadPoolExecutor(thread_name_prefix="orderboard-store")

    def apply(
        self,
        board_id: str,
        batch: MutationBatch,
        actor: Actor,
        *,
        wait_seconds: float | None = None,
    ) -> ReconcileResult:
        if batch.board_id != board_id:
            return ReconcileResult(
                status=ReconcileStatus.INVALID,
                board_id=board_id,
                batch=batch,
                reason=f"batch belongs to board {batch.board_id}",
            )
        wait = self._settings.lock_wait_seconds if wait_seconds is None else wait_seconds
        lock = self._locks.lock_for(board_id)
        if not lock.acquire(wait):
            logger.info("board %s: write in flight, rejecting %s", board_id, actor.id)
            return ReconcileResult(status=ReconcileStatus.BUSY, board_id=board_id, batch=batch)
        try:
            return self._apply_locked(board_id, batch, actor)
        finally:
            lock.release()

    def _apply_locked(self, board_id: str, batch: MutationBatch, actor: Actor) -> ReconcileResult:
        session = self._sessions.get(board_id)
        try:
            current = session.snapshot()
        except StoreError as exc:
            logger.warning("board %s: cannot load snapshot: %s", board_id, exc)
            return failed_result(board_id, exc, batch)

        if self._is_stale(batch, current):
            logger.info(
                "board %s: batch planned on revision %d, current is %d",
                board_id,
                batch.base_revision,
                current.revision,
            )
            return ReconcileResult(
                status=ReconcileStatus.STALE,
                board_id=board_id,
                batch=batch,
                snapshot=current,
                reason="board changed since the batch was planned",
            )

        if batch.is_empty:
            return ReconcileResult(
                status=ReconcileStatus.APPLIED,
                board_id=board_id,
                batch=batch,
                snapshot=current,
            )

        updates = [
            TaskUpdate(
                id=record.item_id,
                bucket_id=record.to_bucket_id,
                order=record.to_order,
                expected_version=self._version_of(current, record.item_id),
            )
            for record in batch.mutations
        ]
        try:
            self._persist(session, updates, current.store_version)
        except StoreConflictError as exc:
            session.invalidate(f"optimistic conflict: {exc}")
            return ReconcileResult(
                status=ReconcileStatus.STALE,
                board_id=board_id,
                batch=batch,
                reason=str(exc),
            )
        except (StoreError, TimeoutError) as exc:
            kind = failure_kind(exc)
            logger.warning("board %s: bulk update failed (%s): %s", board_id, kind, exc)
            session.invalidate(f"bulk update failed: {exc}")
            return failed_result(board_id, exc, batch)
        except Exception as exc:
            logger.exception("board %s: unexpected store error", board_id)
            session.invalidate(f"bulk update failed: {exc}")
            return failed_result(board_id, PermanentStoreError(str(exc)), batch)

        installed = session.install(self._committed(batch, current))
        self._emit_audit(installed, batch, actor)
        self._publish(installed, batch, actor)
        return ReconcileResult(
            status=ReconcileStatus.APPLIED,
            board_id=board_id,
            batch=batch,
            snapshot=installed,
        )

    @staticmethod
    def _is_stale(batch: MutationBatch, current: BoardSnapshot) -> bool:
        if batch.base_revision == current.revision:
            return False
        return batch.base.placement() != current.placement()

    @staticmethod
    def _version_of(snapshot: BoardSnapshot, item_id: str) -> int | None:
        item = snapshot.locate(item_id)
        return None if item is None else item.revision

    def _persist(self, session: BoardSession, updates: list[TaskUpdate], expected_board_version: int) -> None:
        future = self._executor.submit(
            self._store.bulk_update,
            session.board_id,
            updates,
            expected_board_version=expected_board_version,
        )
        timeout = self._settings.store_timeout_seconds
        try:
            future.result(timeout=timeout)
        except TimeoutError as exc:
            if not future.done():
                future.add_done_callback(partial(self._late_write_finished, session))
                raise TransientStoreError(f"store did not answer within {timeout}s") from exc
            raise

    @staticmethod
    def _late_write_finished(session: BoardSession, future: Future[None]) -> None:
        if future.exception() is not None:
            return
        logger.warning("board %s: timed out store write committed late", session.board_id)
        session.invalidate("store write committed after timeout")

    @staticmethod
    def _committed(batch: MutationBatch, current: BoardSnapshot) -> BoardSnapshot:
        moved = {record.item_id for record in batch.mutations}
        lanes: dict[str, list[Item]] = {}
        for bucket_id, lane in batch.proposed.lanes.items():
            rows: list[Item] = []
            for item in lane:
                confirmed = current.locate(item.id) or item
                revision = confirmed.revision + 1 if item.id in moved else confirmed.revision
                rows.append(replace(item, title=confirmed.title, revision=revision))
            lanes[bucket_id] = rows
        return BoardSnapshot.from_lanes(
            current.board_id, current.revision, current.buckets, lanes, store_version=current.store_version + 1
        )

    def _emit_audit(self, snapshot: BoardSnapshot, batch: MutationBatch, actor: Actor) -> None:
        for record in batch.mutations:
            item = snapshot.locate(record.item_id)
            bucket = snapshot.bucket(record.to_bucket_id)
            title = item.title if item is not None and item.title else record.item_id
            bucket_name = bucket.display_name if bucket is not None else record.to_bucket_id
            event = AuditEvent(
                board_id=snapshot.board_id,
                actor_id=actor.id,
                actor_name=actor.display_name,
                item_id=record.item_id,
                message=f'"{title}" moved to "{bucket_name}"',
                detail={
                    "from_bucket_id": record.from_bucket_id,
                    "to_bucket_id": record.to_bucket_id,
                    "from_order": record.from_order,
                    "to_order": record.to_order,
                    "revision": snapshot.revision,
                },
            )
            try:
                self._audit.append(event)
            except Exception:
                logger.exception("board %s: audit append failed for %s", snapshot.board_id, record.item_id)

    def _publish(self, snapshot: BoardSnapshot, batch: MutationBatch, actor: Actor) -> None:
        if self._bus is None:
            return
        try:
            self._bus.publish_dict(
                BOARD_REORDERED,
                snapshot.board_id,
                {
                    "revision": snapshot.revision,
                    "progress": snapshot.progress(),
                    "mutations": [
                        {
                            "item_id": record.item_id,
                            "bucket_id": record.to_bucket_id,
                            "order": record.to_order,
                        }
                        for record in batch.mutations
                    ],
                },
                actor_id=actor.id,
            )
        except Exception:
            logger.exception("board %s: publishing %s failed", snapshot.board_id, BOARD_REORDERED)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
