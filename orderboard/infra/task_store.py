from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import func, insert, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, col, select

from orderboard.domain.errors import PermanentStoreError, StoreConflictError, StoreError, TransientStoreError
from orderboard.domain.models import BoardBucketRecord, BoardRevisionRecord, BoardTaskRecord, now_utc
from orderboard.domain.snapshot import Bucket, Item
from orderboard.infra import db

logger = logging.getLogger(__name__)

DEFAULT_BUCKETS: tuple[Bucket, ...] = (
    Bucket(id="todo", name="To Do", capacity_limit=10, position=0),
    Bucket(id="in_progress", name="In Progress", capacity_limit=5, position=1),
    Bucket(id="review", name="Review", position=2),
    Bucket(id="done", name="Done", position=3),
)

_STATUS_TO_BUCKET: dict[str, str] = {
    "todo": "todo",
    "in_progress": "in_progress",
    "review": "review",
    "done": "done",
    "completed": "done",
}


def bucket_for_status(status: str | None) -> str:
    """Legacy free-form status -> bucket id. Unknown values land in ``todo``."""
    if not status:
        return "todo"
    return _STATUS_TO_BUCKET.get(status.strip().lower(), "todo")


def status_for_bucket(bucket_id: str) -> str:
    return bucket_id if bucket_id in _STATUS_TO_BUCKET.values() else "todo"


@dataclass(frozen=True)
class TaskUpdate:
    id: str
    bucket_id: str
    order: int
    expected_version: int | None = None


class TaskStore(Protocol):
    def list_buckets(self, board_id: str) -> list[Bucket]: ...

    def list_tasks(self, board_id: str) -> list[Item]: ...

    def board_version(self, board_id: str) -> int: ...

    def bulk_update(
        self,
        board_id: str,
        updates: Sequence[TaskUpdate],
        *,
        expected_board_version: int | None = None,
    ) -> None: ...


def classify_db_error(exc: SQLAlchemyError) -> StoreError:
    if isinstance(exc, IntegrityError):
        return PermanentStoreError(str(exc.orig) if exc.orig is not None else str(exc))
    if isinstance(exc, OperationalError):
        return TransientStoreError(str(exc.orig) if exc.orig is not None else str(exc))
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientStoreError(str(exc))
    return PermanentStoreError(str(exc))


def _advance_board_version(session: Session, board_id: str, expected: int | None) -> None:
    """Bump the board's store version inside the caller's transaction.

    With ``expected`` set, any other writer that committed since that version
    was read turns into a ``StoreConflictError``.
    """
    conn = session.connection()
    stmt = update(BoardRevisionRecord).where(col(BoardRevisionRecord.board_id) == board_id)
    if expected is not None:
        stmt = stmt.where(col(BoardRevisionRecord.version) == expected)
    result = conn.execute(stmt.values(version=col(BoardRevisionRecord.version) + 1, updated_at=now_utc()))
    if result.rowcount == 1:
        return
    current = session.exec(
        select(BoardRevisionRecord.version).where(BoardRevisionRecord.board_id == board_id)
    ).first()
    if current is not None or expected not in (None, 0):
        raise StoreConflictError(f"board {board_id} is at version {current or 0}, expected {expected}")
    # first write to this board
    try:
        conn.execute(insert(BoardRevisionRecord).values(board_id=board_id, version=1, updated_at=now_utc()))
    except IntegrityError as exc:
        raise StoreConflictError(f"board {board_id} was first written concurrently") from exc


class SqlTaskStore:
    """Task store backed by the ``board_tasks`` and ``board_buckets`` tables."""

    def _session(self) -> Session:
        return Session(db.get_engine(), expire_on_commit=False)

    def list_buckets(self, board_id: str) -> list[Bucket]:
        try:
            with self._session() as session:
                rows = session.exec(
                    select(BoardBucketRecord)
                    .where(BoardBucketRecord.board_id == board_id)
                    .order_by(col(BoardBucketRecord.position))
                ).all()
        except SQLAlchemyError as exc:
            raise classify_db_error(exc) from exc
        if not rows:
            return list(DEFAULT_BUCKETS)
        return [
            Bucket(id=row.id, name=row.name, capacity_limit=row.capacity_limit, position=row.position)
            for row in rows
        ]

    def board_version(self, board_id: str) -> int:
        try:
            with self._session() as session:
                version = session.exec(
                    select(BoardRevisionRecord.version).where(BoardRevisionRecord.board_id == board_id)
                ).first()
        except SQLAlchemyError as exc:
            raise classify_db_error(exc) from exc
        return 0 if version is None else version

    def list_tasks(self, board_id: str) -> list[Item]:
        try:
            with self._session() as session:
                rows = session.exec(
                    select(BoardTaskRecord).where(BoardTaskRecord.board_id == board_id)
                ).all()
        except SQLAlchemyError as exc:
            raise classify_db_error(exc) from exc
        return [
            Item(
                id=row.id,
                bucket_id=row.bucket_id or bucket_for_status(row.status),
                order=row.position,
                title=row.title,
                revision=row.version,
            )
            for row in rows
        ]

    def add_task(self, board_id: str, title: str, bucket_id: str) -> Item:
        """Append a new task at the bottom of a bucket."""
        try:
            with db.session_scope() as session:
                last = session.exec(
                    select(func.max(BoardTaskRecord.position))
                    .where(BoardTaskRecord.board_id == board_id)
                    .where(BoardTaskRecord.bucket_id == bucket_id)
                ).one()
                row = BoardTaskRecord(
                    board_id=board_id,
                    bucket_id=bucket_id,
                    position=0 if last is None else last + 1,
                    title=title,
                    status=status_for_bucket(bucket_id),
                )
                session.add(row)
                _advance_board_version(session, board_id, None)
        except StoreError:
            raise
        except SQLAlchemyError as exc:
            raise classify_db_error(exc) from exc
        return Item(id=row.id, bucket_id=row.bucket_id, order=row.position, title=row.title, revision=row.version)

    def bulk_update(
        self,
        board_id: str,
        updates: Sequence[TaskUpdate],
        *,
        expected_board_version: int | None = None,
    ) -> None:
        """Apply every update in one transaction, or none of them.

        The board version is checked and bumped in the same transaction, so a
        writer planning from an outdated board never lands.
        """
        if not updates:
            return
        try:
            with db.session_scope() as session:
                _advance_board_version(session, board_id, expected_board_version)
                conn = session.connection()
                for item in updates:
                    stmt = (
                        update(BoardTaskRecord)
                        .where(col(BoardTaskRecord.board_id) == board_id)
                        .where(col(BoardTaskRecord.id) == item.id)
                    )
                    if item.expected_version is not None:
                        stmt = stmt.where(col(BoardTaskRecord.version) == item.expected_version)
                    result = conn.execute(
                        stmt.values(
                            bucket_id=item.bucket_id,
                            position=item.order,
                            status=status_for_bucket(item.bucket_id),
                            version=col(BoardTaskRecord.version) + 1,
                            updated_at=now_utc(),
                        )
                    )
                    if result.rowcount == 1:
                        continue
                    exists = session.exec(
                        select(BoardTaskRecord.id)
                        .where(BoardTaskRecord.board_id == board_id)
                        .where(BoardTaskRecord.id == item.id)
                    ).first()
                    if exists is None:
                        raise PermanentStoreError(f"task not found: {item.id}")
                    raise StoreConflictError(f"task {item.id} changed since version {item.expected_version}")
        except StoreError:
            raise
        except SQLAlchemyError as exc:
            raise classify_db_error(exc) from exc
        logger.debug("board %s: persisted %d task updates", board_id, len(updates))
