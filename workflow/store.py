from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional

from app_logging.activity_logger import ActivityLogger
from schemas.conversation import ConversationContext, ThreadKey

logger = ActivityLogger("conversation_store")


class ConversationExistsError(Exception):
    """A live conversation already owns this thread key."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore:
    """
    In-memory registry of active conversations, one per thread key.

    Writers take `lock(key)` so transitions for one thread never interleave;
    different keys share nothing but this mapping. Completed conversations
    are kept until their `expires_at` passes so late messages in the thread
    land on a finished conversation instead of starting a new one. Expired
    entries are invisible to `get()` and removed by `purge_expired()`.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._entries: dict[ThreadKey, ConversationContext] = {}
        self._locks: dict[ThreadKey, asyncio.Lock] = {}
        # Holders plus waiters per key; a lock is dropped only at zero
        self._lock_users: dict[ThreadKey, int] = {}

    # ── Locking ───────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def lock(self, key: ThreadKey) -> AsyncIterator[None]:
        """Hold the thread lock for `key` for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                if key not in self._entries:
                    self._locks.pop(key, None)

    # ── Entries ───────────────────────────────────────────────────────────────

    def get(self, key: ThreadKey) -> Optional[ConversationContext]:
        context = self._entries.get(key)
        if context is not None and self._is_expired(context):
            self._remove(key, reason="expired")
            return None
        return context

    def add(self, context: ConversationContext) -> None:
        if self.get(context.key) is not None:
            raise ConversationExistsError(f"conversation already active for {context.key}")
        self._entries[context.key] = context

    def discard(self, key: ThreadKey, context: Optional[ConversationContext] = None) -> bool:
        """Remove the entry for key. With `context`, only if it is still that entry."""
        current = self._entries.get(key)
        if current is None or (context is not None and current is not context):
            return False
        self._remove(key, reason="discarded")
        return True

    def is_current(self, context: ConversationContext) -> bool:
        """True while `context` is still the live entry for its key."""
        return self.get(context.key) is context

    def expire_after(self, context: ConversationContext, seconds: float) -> None:
        context.expires_at = self._clock() + timedelta(seconds=seconds)

    def purge_expired(self) -> int:
        expired = [k for k, c in self._entries.items() if self._is_expired(c)]
        for key in expired:
            self._remove(key, reason="expired")
        return len(expired)

    def active_keys(self) -> list[ThreadKey]:
        return [k for k, c in self._entries.items() if not self._is_expired(c)]

    def __len__(self) -> int:
        return len(self.active_keys())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, ThreadKey) and self.get(key) is not None

    # ── Internals ─────────────────────────────────────────────────────────────

    def _is_expired(self, context: ConversationContext) -> bool:
        return context.expires_at is not None and context.expires_at <= self._clock()

    def _remove(self, key: ThreadKey, reason: str) -> None:
        context = self._entries.pop(key, None)
        if key not in self._lock_users:
            self._locks.pop(key, None)
        if context is not None:
            logger.info(
                "conversation_removed",
                run_id=context.run_id,
                ticket_id=context.ticket_id,
                thread=key.token,
                stage=context.stage.value,
                reason=reason,
            )
