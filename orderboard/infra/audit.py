from __future__ import annotations

from typing import Protocol

from sqlmodel import Session, col, select

from orderboard.domain.models import AuditEvent, AuditEventRecord
from orderboard.infra.db import engine

DEFAULT_ACTIVITY_LIMIT = 50


class AuditSink(Protocol):
    def append(self, event: AuditEvent) -> None: ...

    def list_events(self, board_id: str, limit: int = DEFAULT_ACTIVITY_LIMIT) -> list[AuditEventRecord]: ...


def write_audit_event(event: AuditEvent) -> AuditEventRecord:
    record = AuditEventRecord(
        board_id=event.board_id,
        actor_id=event.actor_id,
        actor_name=event.actor_name,
        action=event.action,
        item_id=event.item_id,
        message=event.message,
        ts=event.ts,
        detail=event.detail,
    )
    with Session(engine, expire_on_commit=False) as session:
        session.add(record)
        session.commit()
    return record


class SqlAuditSink:
    """Append-only activity feed stored next to the tasks."""

    def append(self, event: AuditEvent) -> None:
        write_audit_event(event)

    def list_events(self, board_id: str, limit: int = DEFAULT_ACTIVITY_LIMIT) -> list[AuditEventRecord]:
        with Session(engine) as session:
            rows = session.exec(
                select(AuditEventRecord)
                .where(AuditEventRecord.board_id == board_id)
                .order_by(col(AuditEventRecord.id).desc())
                .limit(limit)
            ).all()
        return list(rows)
