import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from .models import ConversationSession


logger = logging.getLogger(__name__)


class ConversationStore:
    """In-memory per-customer sessions with idle expiry.

    Sessions are created lazily by `get` and dropped after `ttl_seconds`
    without a `set`. `lock(customer_id)` hands out one asyncio.Lock per
    customer so concurrent deliveries from the same number run one at a time.
    """

    def __init__(self, ttl_seconds: Optional[int] = 7200, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, ConversationSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _expired(self, session: ConversationSession, now: float) -> bool:
        return bool(self.ttl_seconds) and now - session.updated_at > self.ttl_seconds

    def get(self, customer_id: str) -> ConversationSession:
        now = self._clock()
        session = self._sessions.get(customer_id)
        if session is None or self._expired(session, now):
            session = ConversationSession(customer_id=customer_id, updated_at=now)
            self._sessions[customer_id] = session
        return session

    def set(self, customer_id: str, session: ConversationSession) -> None:
        session.updated_at = self._clock()
        self._sessions[customer_id] = session

    def clear(self, customer_id: str) -> None:
        self._sessions.pop(customer_id, None)

    def sweep(self) -> int:
        now = self._clock()
        # get/set run in threadpool workers while this runs on the loop
        expired = [cid for cid, s in list(self._sessions.items()) if self._expired(s, now)]
        for cid in expired:
            self._sessions.pop(cid, None)
            lock = self._locks.get(cid)
            if lock is not None and not lock.locked():
                self._locks.pop(cid, None)
        if expired:
            logger.info("Swept %d idle sessions", len(expired))
        return len(expired)

    def lock(self, customer_id: str) -> asyncio.Lock:
        lock = self._locks.get(customer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[customer_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._sessions)


class DedupCache:
    """Remembers inbound message ids for `ttl_seconds` to drop redeliveries."""

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: Dict[str, float] = {}

    def seen(self, message_id: str) -> bool:
        """True if the id was already registered inside the window; registers it otherwise."""
        now = self._clock()
        self._evict(now)
        if message_id in self._seen:
            return True
        self._seen[message_id] = now
        return False

    def _evict(self, now: float) -> None:
        cutoff = now - self.ttl_seconds
        stale = [mid for mid, ts in self._seen.items() if ts < cutoff]
        for mid in stale:
            del self._seen[mid]

    def __len__(self) -> int:
        return len(self._seen)
