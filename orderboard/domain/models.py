from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from orderboard.domain.state_machine import FailureKind, ReconcileStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    board_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditEventRecord(SQLModel, table=True):
    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_board_ts", "board_id", "ts"),)

    id: int | None = Field(default=None, primary_key=True)
    board_id: str = Field(index=True)
    actor_id: str = Field(index=True)
    actor_name: str = ""
    action: str
    item_id: str | None = Field(default=None, index=True)
    message: str
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class BoardBucketRecord(SQLModel, table=True):
    __tablename__ = "board_buckets"
    __table_args__ = (
        UniqueConstraint("board_id", "position", name="uq_board_buckets_board_position"),
    )

    board_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    name: str
    capacity_limit: int | None = None
    position: int = 0


class BoardRevisionRecord(SQLModel, table=True):
    __tablename__ = "board_revisions"

    board_id: str = Field(primary_key=True)
    version: int = 0
    updated_at: datetime = Field(default_factory=now_utc)


class BoardTaskRecord(SQLModel, table=True):
    __tablename__ = "board_tasks"
    __table_args__ = (
        Index("ix_board_tasks_board_bucket_position", "board_id", "bucket_id", "position"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    board_id: str = Field(index=True)
    bucket_id: str = Field(index=True)
    position: int = 0
    title: str = ""
    status: str = ""
    version: int = 0
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    board_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any]


class AuditEvent(BaseModel):
    board_id: str
    actor_id: str
    actor_name: str = ""
    action: str = "board.item.moved"
    item_id: str | None = None
    message: str
    ts: datetime = PydanticField(default_factory=now_utc)
    detail: dict[str, Any] = PydanticField(default_factory=dict)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ItemRead(ORMReadModel):
    id: str
    bucket_id: str
    order: int
    title: str = ""
    revision: int = 0


class BucketRead(ORMReadModel):
    id: str
    name: str
    capacity_limit: int | None = None
    position: int
    items: list[ItemRead]


class SnapshotRead(BaseModel):
    board_id: str
    revision: int
    buckets: list[BucketRead]


class ProposedItem(BaseModel):
    id: str
    order: int | None = None


class ProposedBucket(BaseModel):
    id: str
    items: list[ProposedItem] = PydanticField(default_factory=list)


class ReorderRequest(BaseModel):
    revision: int
    buckets: list[ProposedBucket]


class MoveRequest(BaseModel):
    item_id: str
    bucket_id: str
    position: int = PydanticField(ge=0)


class MutationRead(BaseModel):
    item_id: str
    from_bucket_id: str
    to_bucket_id: str
    from_order: int
    to_order: int


class CapacityWarningRead(BaseModel):
    bucket_id: str
    capacity_limit: int
    item_count: int
    message: str


class ReconcileResultRead(BaseModel):
    status: ReconcileStatus
    board_id: str
    revision: int | None = None
    mutations: list[MutationRead] = PydanticField(default_factory=list)
    warnings: list[CapacityWarningRead] = PydanticField(default_factory=list)
    failure: FailureKind | None = None
    reason: str | None = None


class AuditEventRead(ORMReadModel):
    id: int
    board_id: str
    actor_id: str
    actor_name: str
    action: str
    item_id: str | None
    message: str
    ts: datetime
    detail: dict[str, Any]
