from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from .backends import LockBackend

logger = logging.getLogger(__name__)


class LockManager:
    """TTL-bearing mutual exclusion token serializing control-loop cycles."""

    def __init__(
        self,
        backend: LockBackend,
        ttl_s: int = 60,
        reclaim_expired: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.ttl_s = max(1, int(ttl_s))
        self.reclaim_expired = reclaim_expired
        self.clock = clock
        # lock_id -> expiry this manager wrote; release only deletes its own entry.
        self._held: dict[str, int] = {}

    def acquire(self, lock_id: str) -> bool:
        """Conditionally create the lock entry.

        Returns False when another cycle holds the lock. Backend failures
        other than the failed condition propagate.
        """
        now = int(self.clock())
        reclaim_before = now if self.reclaim_expired else None
        expires_at = now + self.ttl_s
        acquired = self.backend.put_if_absent(lock_id, expires_at, reclaim_before=reclaim_before)
        if acquired:
            self._held[lock_id] = expires_at
            logger.info("Lock %s acquired (ttl=%ss)", lock_id, self.ttl_s)
        else:
            logger.info("Lock %s already held, exiting", lock_id)
        return acquired

    def release(self, lock_id: str) -> None:
        """Delete the entry this manager acquired.

        If the entry expired and another cycle reclaimed it, that cycle's
        entry is left in place.
        """
        expires_at = self._held.pop(lock_id, None)
        if self.backend.delete(lock_id, expires_at=expires_at):
            logger.info("Lock %s released", lock_id)
        else:
            logger.warning("Lock %s was no longer ours to release (expired and reclaimed?)", lock_id)

    @contextmanager
    def held(self, lock_id: str) -> Iterator[bool]:
        """Yield whether the lock was acquired; release it on exit if it was."""
        acquired = self.acquire(lock_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(lock_id)
