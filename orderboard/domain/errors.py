from __future__ import annotations


class OrderBoardError(Exception):
    pass


class SnapshotValidationError(OrderBoardError):
    """Raised when a snapshot breaks bucket membership or ordering invariants."""

    def __init__(self, message: str, *, bucket_id: str | None = None, item_id: str | None = None) -> None:
        super().__init__(message)
        self.bucket_id = bucket_id
        self.item_id = item_id


class NotFoundError(OrderBoardError):
    pass


class StoreError(OrderBoardError):
    pass


class TransientStoreError(StoreError):
    pass


class PermanentStoreError(StoreError):
    pass


class StoreConflictError(StoreError):
    """Persisted rows changed since they were last read."""
