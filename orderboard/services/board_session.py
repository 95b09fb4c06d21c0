from __future__ import annotations

import logging
import threading

from orderboard.domain.snapshot import BoardSnapshot
from orderboard.domain.state_machine import SessionState, can_transition
from orderboard.infra.events import BOARD_SESSION_INVALIDATED, EventBus
from orderboard.infra.task_store import TaskStore

logger = logging.getLogger(__name__)


class BoardSession:
    """Last known-good snapshot of one board.

    READY reads are served from memory. EMPTY and STALE reads fetch from the
    store; concurrent readers share a single in-flight fetch. The snapshot is
    only ever swapped as a whole value.
    """

    def __init__(self, board_id: str, store: TaskStore, *, bus: EventBus | None = None) -> None:
        self.board_id = board_id
        self._store = store
        self._bus = bus
        self._cond = threading.Condition()
        self._state = SessionState.EMPTY
        self._snapshot: BoardSnapshot | None = None
        self._revision = -1
        self._fetching = False
        self._generation = 0
        self._fetch_seq = 0
        self._last_fetch: BoardSnapshot | BaseException | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    def peek(self) -> BoardSnapshot | None:
        return self._snapshot

    def snapshot(self) -> BoardSnapshot:
        with self._cond:
            if self._state == SessionState.READY and self._snapshot is not None:
                return self._snapshot
            if self._fetching:
                return self._wait_for_fetch()
            self._fetching = True

        try:
            installed = self._refetch()
        except BaseException as exc:
            with self._cond:
                self._finish_fetch(exc)
            raise
        with self._cond:
            self._finish_fetch(installed)
        logger.debug("board %s: fetched revision %d (%d items)", self.board_id, installed.revision, len(installed))
        return installed

    def install(self, snapshot: BoardSnapshot) -> BoardSnapshot:
        with self._cond:
            self._generation += 1
            return self._set(snapshot)

    def invalidate(self, reason: str = "") -> None:
        with self._cond:
            # a fetch already reading the store may predate the cause
            self._generation += 1
            if not can_transition(self._state, SessionState.STALE):
                return
            self._state = SessionState.STALE
        logger.info("board %s: session invalidated (%s)", self.board_id, reason or "refresh requested")
        if self._bus is None:
            return
        try:
            self._bus.publish_dict(BOARD_SESSION_INVALIDATED, self.board_id, {"reason": reason})
        except Exception:
            logger.exception("board %s: publishing %s failed", self.board_id, BOARD_SESSION_INVALIDATED)

    def _refetch(self) -> BoardSnapshot:
        """Fetch until no install or invalidate raced the read."""
        while True:
            with self._cond:
                generation = self._generation
            fetched = self._fetch()
            with self._cond:
                if self._generation == generation:
                    return self._set(fetched)
                if self._state == SessionState.READY and self._snapshot is not None:
                    return self._snapshot
            logger.debug("board %s: store changed during fetch, reading again", self.board_id)

    def _fetch(self) -> BoardSnapshot:
        # version first: a commit landing mid-read then shows up as a conflict on the next write
        version = self._store.board_version(self.board_id)
        buckets = self._store.list_buckets(self.board_id)
        items = self._store.list_tasks(self.board_id)
        return BoardSnapshot.from_items(self.board_id, 0, buckets, items, store_version=version)

    def _set(self, snapshot: BoardSnapshot) -> BoardSnapshot:
        if not can_transition(self._state, SessionState.READY):
            raise RuntimeError(f"cannot install snapshot from state {self._state}")
        # an unchanged placement keeps its revision so callers holding it are not stale
        if self._snapshot is None or self._snapshot.placement() != snapshot.placement():
            self._revision += 1
        installed = snapshot.with_revision(self._revision)
        self._snapshot = installed
        self._state = SessionState.READY
        return installed

    def _finish_fetch(self, outcome: BoardSnapshot | BaseException) -> None:
        self._fetching = False
        self._fetch_seq += 1
        self._last_fetch = outcome
        self._cond.notify_all()

    def _wait_for_fetch(self) -> BoardSnapshot:
        seq = self._fetch_seq
        while self._fetching and self._fetch_seq == seq:
            self._cond.wait()
        outcome = self._last_fetch
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            raise RuntimeError("fetch finished without a result")
        return outcome


class BoardSessionRegistry:
    def __init__(self, store: TaskStore, *, bus: EventBus | None = None) -> None:
        self._store = store
        self._bus = bus
        self._sessions: dict[str, BoardSession] = {}
        self._guard = threading.Lock()

    def get(self, board_id: str) -> BoardSession:
        with self._guard:
            session = self._sessions.get(board_id)
            if session is None:
                session = BoardSession(board_id, self._store, bus=self._bus)
                self._sessions[board_id] = session
            return session
