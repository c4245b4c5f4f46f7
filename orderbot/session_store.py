from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, Optional

from .catalog import Cart
from .models import CustomerInfo


class SessionStep(str, Enum):
    CATALOG = "catalog"
    ORDERING = "ordering"
    GET_NAME = "get_name"
    GET_ADDRESS = "get_address"
    GET_PAYMENT = "get_payment"
    CONFIRM = "confirm"


STEP_SEQUENCE = [
    SessionStep.CATALOG,
    SessionStep.ORDERING,
    SessionStep.GET_NAME,
    SessionStep.GET_ADDRESS,
    SessionStep.GET_PAYMENT,
    SessionStep.CONFIRM,
]


@dataclass
class Session:
    """Per-user dialog progress; owned by the state machine while its user lock is held."""
    user_id: str
    step: SessionStep = SessionStep.CATALOG
    cart: Cart = field(default_factory=Cart)
    customer: CustomerInfo = field(default_factory=CustomerInfo)
    created_at: float = 0.0
    last_activity: float = 0.0
    # Allocated on the first "place order" and reused by retries.
    order_id: Optional[str] = None

    def advance(self) -> SessionStep:
        index = STEP_SEQUENCE.index(self.step)
        if index + 1 >= len(STEP_SEQUENCE):
            raise ValueError(f"Session for {self.user_id} cannot advance past {self.step.value}")
        self.step = STEP_SEQUENCE[index + 1]
        return self.step


@dataclass
class _UserLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class SessionStore:
    """In-process session storage with per-user serialization and idle expiry."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        placed_window_seconds: float = 600,
        max_sessions: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Purpose: Initialize empty session, lock, and placed-order maps.
        Inputs/Outputs: Inputs are idle TTL, placed-order window, optional cap, and a clock.
        Side Effects / State: Creates the guarding lock; holds no I/O resources.
        Dependencies: Uses threading and a monotonic clock (injectable for tests).
        Failure Modes: None at init.
        If Removed: The state machine has no place to keep dialog progress.
        Testing Notes: Inject a fake clock to exercise expiry without sleeping.
        """
        # Keep configuration and empty caches guarded by one lock.
        self._ttl = ttl_seconds
        self._placed_window = placed_window_seconds
        self._max_sessions = max_sessions
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._user_locks: Dict[str, _UserLock] = {}
        self._placed: Dict[str, float] = {}

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """Purpose: Serialize all processing for one user id.
        Inputs/Outputs: Input is user_id; used as a context manager.
        Side Effects / State: Creates a lock entry on first use and drops it when the
            last holder or waiter leaves, so idle users keep no lock.
        Dependencies: Uses _UserLock reference counting under self._lock.
        Failure Modes: None; exceptions inside the block release the lock.
        If Removed: Two deliveries for the same user can interleave step transitions.
        Testing Notes: Run two threads for one user and assert their blocks never overlap.
        """
        # Register interest before blocking so the entry cannot be dropped underneath us.
        with self._lock:
            entry = self._user_locks.get(user_id)
            if entry is None:
                entry = self._user_locks[user_id] = _UserLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.holders -= 1
                if entry.holders == 0:
                    self._user_locks.pop(user_id, None)

    def get(self, user_id: str) -> Optional[Session]:
        """Return the live session for user_id, touching it; expired sessions are dropped."""
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return None
            now = self._clock()
            if self._is_expired(session, now):
                del self._sessions[user_id]
                return None
            session.last_activity = now
            return session

    def get_or_create(self, user_id: str) -> Session:
        """Purpose: Fetch the user's session or lazily start a new one at CATALOG.
        Inputs/Outputs: Input is user_id; output is a Session.
        Side Effects / State: May create a session and prune when over max_sessions.
        Dependencies: Uses get() for expiry handling and _prune_sessions.
        Failure Modes: None.
        If Removed: First contact from a user cannot start the dialog.
        Testing Notes: Verify a fresh session starts at CATALOG with an empty cart.
        """
        # Reuse a live session, otherwise create one stamped with the current clock.
        session = self.get(user_id)
        if session is not None:
            return session
        with self._lock:
            now = self._clock()
            session = Session(user_id=user_id, created_at=now, last_activity=now)
            self._sessions[user_id] = session
            self._prune_sessions(keep=user_id)
            return session

    def drop(self, user_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(user_id, None) is not None

    def mark_placed(self, user_id: str) -> None:
        with self._lock:
            self._placed[user_id] = self._clock() + self._placed_window

    def recently_placed(self, user_id: str) -> bool:
        with self._lock:
            deadline = self._placed.get(user_id)
            if deadline is None:
                return False
            if deadline <= self._clock():
                del self._placed[user_id]
                return False
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        with self._lock:
            return user_id in self._sessions

    def sweep_expired(self) -> int:
        """Purpose: Evict idle sessions and lapsed placed-order markers.
        Inputs/Outputs: No inputs; returns how many sessions were removed.
        Side Effects / State: Mutates _sessions and _placed.
        Dependencies: Uses the configured TTL and clock.
        Failure Modes: None; no-op when TTL is unset.
        If Removed: Abandoned conversations stay in memory forever.
        Testing Notes: Advance a fake clock past TTL and verify eviction counts.
        """
        # Remove sessions idle longer than TTL, then expired placed markers.
        with self._lock:
            now = self._clock()
            expired = [uid for uid, session in self._sessions.items() if self._is_expired(session, now)]
            for uid in expired:
                del self._sessions[uid]
            lapsed = [uid for uid, deadline in self._placed.items() if deadline <= now]
            for uid in lapsed:
                del self._placed[uid]
            return len(expired)

    def _is_expired(self, session: Session, now: float) -> bool:
        if not self._ttl or self._ttl <= 0:
            return False
        return now - session.last_activity > self._ttl

    def _prune_sessions(self, keep: Optional[str] = None) -> bool:
        # Drop least-recently active sessions above the configured cap; caller holds the lock.
        if not self._max_sessions or self._max_sessions <= 0:
            return False
        if len(self._sessions) <= self._max_sessions:
            return False
        ordered = sorted(
            self._sessions.values(),
            key=lambda s: (s.user_id == keep, s.last_activity),
            reverse=True,
        )
        keep_ids = {session.user_id for session in ordered[: self._max_sessions]}
        removed = [uid for uid in list(self._sessions) if uid not in keep_ids]
        for uid in removed:
            self._sessions.pop(uid, None)
        return bool(removed)
