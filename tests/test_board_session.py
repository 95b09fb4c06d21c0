from __future__ import annotations

import threading
import time
from collections.abc import Sequence

import pytest

from orderboard.domain.errors import TransientStoreError
from orderboard.domain.snapshot import BoardSnapshot, Bucket, Item
from orderboard.domain.state_machine import SessionState, can_transition
from orderboard.infra.task_store import TaskUpdate
from orderboard.services.board_session import BoardSession, BoardSessionRegistry

BUCKETS = [Bucket(id="todo", name="To Do", position=0), Bucket(id="done", name="Done", position=1)]


class CountingStore:
    def __init__(self, items: list[Item], *, delay: float = 0.0) -> None:
        self.items = items
        self.delay = delay
        self.fetches = 0
        self.fail_with: Exception | None = None
        self.version = 0
        self.read_started = threading.Event()
        self._guard = threading.Lock()

    def list_buckets(self, board_id: str) -> list[Bucket]:
        return list(BUCKETS)

    def list_tasks(self, board_id: str) -> list[Item]:
        with self._guard:
            self.fetches += 1
        rows = list(self.items)
        self.read_started.set()
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return rows

    def board_version(self, board_id: str) -> int:
        return self.version

    def bulk_update(
        self,
        board_id: str,
        updates: Sequence[TaskUpdate],
        *,
        expected_board_version: int | None = None,
    ) -> None:
        raise AssertionError("sessions never write")


def _items() -> list[Item]:
    return [
        Item(id="A", bucket_id="todo", order=0, title="A"),
        Item(id="B", bucket_id="todo", order=1, title="B"),
    ]


def test_session_state_transitions() -> None:
    assert can_transition(SessionState.EMPTY, SessionState.READY)
    assert not can_transition(SessionState.EMPTY, SessionState.STALE)
    assert can_transition(SessionState.READY, SessionState.STALE)
    assert can_transition(SessionState.STALE, SessionState.READY)


def test_first_read_fetches_then_serves_from_memory() -> None:
    store = CountingStore(_items())
    session = BoardSession("board-1", store)
    assert session.state == SessionState.EMPTY
    assert session.peek() is None

    first = session.snapshot()
    second = session.snapshot()

    assert store.fetches == 1
    assert first is second
    assert session.state == SessionState.READY
    assert first.revision == 0
    assert [item.id for item in first.lane("todo")] == ["A", "B"]


def test_invalidate_forces_refetch() -> None:
    store = CountingStore(_items())
    session = BoardSession("board-1", store)
    session.snapshot()

    session.invalidate("test")
    assert session.state == SessionState.STALE

    store.items = [Item(id="A", bucket_id="done", order=0), Item(id="B", bucket_id="todo", order=0)]
    refreshed = session.snapshot()
    assert store.fetches == 2
    assert session.state == SessionState.READY
    assert refreshed.revision == 1
    assert [item.id for item in refreshed.lane("done")] == ["A"]


def test_refetch_of_unchanged_board_keeps_revision() -> None:
    store = CountingStore(_items())
    session = BoardSession("board-1", store)
    first = session.snapshot()
    session.invalidate("test")
    again = session.snapshot()
    assert again.revision == first.revision
    assert again.placement() == first.placement()


def test_invalidate_on_empty_session_is_ignored() -> None:
    session = BoardSession("board-1", CountingStore(_items()))
    session.invalidate("nothing cached")
    assert session.state == SessionState.EMPTY


def test_concurrent_readers_share_one_fetch() -> None:
    store = CountingStore(_items(), delay=0.2)
    session = BoardSession("board-1", store)
    results: list[object] = []
    lock = threading.Lock()

    def _read() -> None:
        snapshot = session.snapshot()
        with lock:
            results.append(snapshot)

    threads = [threading.Thread(target=_read) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.fetches == 1
    assert len(results) == 5
    assert all(result is results[0] for result in results)


def test_fetch_failure_is_shared_and_leaves_state() -> None:
    store = CountingStore(_items(), delay=0.2)
    store.fail_with = TransientStoreError("db down")
    session = BoardSession("board-1", store)
    errors: list[Exception] = []
    lock = threading.Lock()

    def _read() -> None:
        try:
            session.snapshot()
        except TransientStoreError as exc:
            with lock:
                errors.append(exc)

    threads = [threading.Thread(target=_read) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.fetches == 1
    assert len(errors) == 3
    assert session.state == SessionState.EMPTY

    store.fail_with = None
    store.delay = 0
    assert len(session.snapshot()) == 2


def test_fetch_failure_on_stale_session_propagates() -> None:
    store = CountingStore(_items())
    session = BoardSession("board-1", store)
    session.snapshot()
    session.invalidate("test")
    store.fail_with = TransientStoreError("db down")
    with pytest.raises(TransientStoreError):
        session.snapshot()
    assert session.state == SessionState.STALE


def test_registry_returns_one_session_per_board() -> None:
    registry = BoardSessionRegistry(CountingStore(_items()))
    assert registry.get("board-1") is registry.get("board-1")
    assert registry.get("board-1") is not registry.get("board-2")


def test_install_during_fetch_wins_over_older_read() -> None:
    store = CountingStore(_items())
    session = BoardSession("board-1", store)
    session.snapshot()
    session.invalidate("external refresh")

    store.delay = 0.3
    store.read_started.clear()
    results: list[object] = []
    reader = threading.Thread(target=lambda: results.append(session.snapshot()))
    reader.start()
    assert store.read_started.wait(timeout=5)

    committed = [Item(id="A", bucket_id="todo", order=0), Item(id="B", bucket_id="done", order=0)]
    store.items = committed
    installed = session.install(BoardSnapshot.from_items("board-1", 0, BUCKETS, committed))
    reader.join(timeout=5)

    assert results == [installed]
    assert session.state == SessionState.READY
    assert session.peek() is installed
    assert session.snapshot().placement() == {"A": ("todo", 0), "B": ("done", 0)}
    assert store.fetches == 2


def test_invalidate_during_fetch_reads_again() -> None:
    store = CountingStore(_items(), delay=0.2)
    session = BoardSession("board-1", store)
    results: list[object] = []
    reader = threading.Thread(target=lambda: results.append(session.snapshot()))
    reader.start()
    assert store.read_started.wait(timeout=5)

    store.items = [Item(id="A", bucket_id="done", order=0), Item(id="B", bucket_id="todo", order=0)]
    session.invalidate("external refresh")
    reader.join(timeout=5)

    assert store.fetches == 2
    assert session.peek().placement() == {"A": ("done", 0), "B": ("todo", 0)}
