from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from orderboard.domain.errors import NotFoundError, PermanentStoreError, StoreError
from orderboard.domain.models import (
    AuditEventRead,
    BucketRead,
    CapacityWarningRead,
    ItemRead,
    MoveRequest,
    MutationRead,
    ReconcileResultRead,
    ReorderRequest,
    SnapshotRead,
)
from orderboard.domain.snapshot import BoardSnapshot
from orderboard.domain.state_machine import FailureKind, ReconcileStatus
from orderboard.infra.audit import DEFAULT_ACTIVITY_LIMIT
from orderboard.infra.events import event_bus
from orderboard.services.board_service import BoardService
from orderboard.services.write_coordinator import Actor, ReconcileResult

router = APIRouter()


@lru_cache(maxsize=1)
def get_board_service() -> BoardService:
    return BoardService(bus=event_bus)


def get_actor(
    x_actor_id: Annotated[str, Header()],
    x_actor_name: Annotated[str, Header()] = "",
) -> Actor:
    return Actor(id=x_actor_id, name=x_actor_name)


Service = Annotated[BoardService, Depends(get_board_service)]
CurrentActor = Annotated[Actor, Depends(get_actor)]

_RESULT_STATUS_CODES: dict[ReconcileStatus, int] = {
    ReconcileStatus.APPLIED: status.HTTP_200_OK,
    ReconcileStatus.INVALID: 422,
    ReconcileStatus.BUSY: status.HTTP_423_LOCKED,
    ReconcileStatus.STALE: status.HTTP_409_CONFLICT,
}


def _snapshot_read(snapshot: BoardSnapshot) -> SnapshotRead:
    return SnapshotRead(
        board_id=snapshot.board_id,
        revision=snapshot.revision,
        buckets=[
            BucketRead(
                id=bucket.id,
                name=bucket.display_name,
                capacity_limit=bucket.capacity_limit,
                position=bucket.position,
                items=[ItemRead.model_validate(item) for item in snapshot.lane(bucket.id)],
            )
            for bucket in snapshot.buckets
        ],
    )


def _result_read(result: ReconcileResult) -> ReconcileResultRead:
    batch = result.batch
    return ReconcileResultRead(
        status=result.status,
        board_id=result.board_id,
        revision=result.snapshot.revision if result.snapshot is not None else None,
        mutations=[
            MutationRead(
                item_id=record.item_id,
                from_bucket_id=record.from_bucket_id,
                to_bucket_id=record.to_bucket_id,
                from_order=record.from_order,
                to_order=record.to_order,
            )
            for record in result.mutations
        ],
        warnings=[
            CapacityWarningRead(
                bucket_id=warning.bucket_id,
                capacity_limit=warning.capacity_limit,
                item_count=warning.item_count,
                message=warning.message,
            )
            for warning in (batch.warnings if batch is not None else ())
        ],
        failure=result.failure,
        reason=result.reason,
    )


def _respond(result: ReconcileResult) -> ReconcileResultRead:
    body = _result_read(result)
    if result.status == ReconcileStatus.FAILED:
        code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if result.failure == FailureKind.TRANSIENT
            else status.HTTP_502_BAD_GATEWAY
        )
        raise HTTPException(status_code=code, detail=body.model_dump(mode="json"))
    code = _RESULT_STATUS_CODES[result.status]
    if code != status.HTTP_200_OK:
        raise HTTPException(status_code=code, detail=body.model_dump(mode="json"))
    return body


def _handle_store_error(exc: StoreError) -> None:
    code = (
        status.HTTP_502_BAD_GATEWAY
        if isinstance(exc, PermanentStoreError)
        else status.HTTP_503_SERVICE_UNAVAILABLE
    )
    raise HTTPException(status_code=code, detail=str(exc)) from exc


@router.get("/{board_id}/snapshot", response_model=SnapshotRead)
def get_snapshot(board_id: str, service: Service) -> SnapshotRead:
    try:
        return _snapshot_read(service.get_snapshot(board_id))
    except StoreError as exc:
        _handle_store_error(exc)
        raise


@router.put("/{board_id}/snapshot", response_model=ReconcileResultRead)
def submit_reorder(
    board_id: str,
    payload: ReorderRequest,
    service: Service,
    actor: CurrentActor,
) -> ReconcileResultRead:
    try:
        proposed = service.build_proposal(
            board_id,
            payload.revision,
            {bucket.id: [(item.id, item.order) for item in bucket.items] for bucket in payload.buckets},
        )
    except StoreError as exc:
        _handle_store_error(exc)
        raise
    return _respond(service.submit_reorder(board_id, proposed, actor))


@router.post("/{board_id}/moves", response_model=ReconcileResultRead)
def move_item(
    board_id: str,
    payload: MoveRequest,
    service: Service,
    actor: CurrentActor,
) -> ReconcileResultRead:
    try:
        result = service.move_item(board_id, payload.item_id, payload.bucket_id, payload.position, actor)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _respond(result)


@router.post("/{board_id}/refresh", status_code=status.HTTP_202_ACCEPTED)
def refresh(board_id: str, service: Service) -> dict[str, str]:
    service.refresh(board_id)
    return {"board_id": board_id, "session": service.session_state(board_id)}


@router.get("/{board_id}/activity", response_model=list[AuditEventRead])
def list_activity(
    board_id: str,
    service: Service,
    limit: Annotated[int, Query(ge=1, le=500)] = DEFAULT_ACTIVITY_LIMIT,
) -> list[AuditEventRead]:
    rows = service.list_activity(board_id, limit=limit)
    return [AuditEventRead.model_validate(row) for row in rows]
