"""In-memory pending-ceremony cache keyed by client session."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, Literal, Optional

from .errors import NoPendingCeremony
from .models import UserIdentity

REGISTRATION = "registration"
AUTHENTICATION = "authentication"
CeremonyKind = Literal["registration", "authentication"]


@dataclass
class PendingCeremony:
    kind: str
    user: Optional[UserIdentity]
    challenge: bytes
    created_at: float = field(default_factory=time.monotonic)


@dataclass
class _SessionLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class ChallengeCache:
    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: Dict[str, PendingCeremony] = {}
        self._session_locks: Dict[str, _SessionLock] = {}
        self._lock = threading.Lock()

    def start(
        self,
        session_id: str,
        kind: CeremonyKind,
        user: Optional[UserIdentity],
        challenge: bytes,
    ) -> PendingCeremony:
        pending = PendingCeremony(kind=kind, user=user, challenge=challenge, created_at=self._clock())
        with self._lock:
            self._pending[session_id] = pending
        return pending

    def consume(self, session_id: str) -> PendingCeremony:
        with self._lock:
            pending = self._pending.pop(session_id, None)
        if pending is None:
            raise NoPendingCeremony()
        if self._clock() - pending.created_at > self.ttl_seconds:
            raise NoPendingCeremony("Challenge expired")
        return pending

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        """Serialize ceremony handling for one session."""
        with self._lock:
            entry = self._session_locks.setdefault(session_id, _SessionLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._session_locks[session_id]

    def held_sessions(self) -> int:
        with self._lock:
            return len(self._session_locks)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                key
                for key, pending in self._pending.items()
                if now - pending.created_at > self.ttl_seconds
            ]
            for key in expired:
                del self._pending[key]
        return len(expired)


class ChallengeSession:
    """A ``ChallengeCache`` bound to one client session."""

    def __init__(self, cache: ChallengeCache, session_id: str) -> None:
        self.cache = cache
        self.session_id = session_id

    def start(self, kind: CeremonyKind, user: Optional[UserIdentity], challenge: bytes) -> PendingCeremony:
        return self.cache.start(self.session_id, kind, user, challenge)

    def consume(self, expected_kind: CeremonyKind) -> PendingCeremony:
        pending = self.cache.consume(self.session_id)
        if pending.kind != expected_kind:
            raise NoPendingCeremony(f"No pending {expected_kind} ceremony")
        return pending
