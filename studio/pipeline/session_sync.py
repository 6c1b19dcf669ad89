"""
SessionSync: debounced write-behind of the store snapshot.

Every store mutation calls notify(); the write happens once mutations have
been quiet for `debounce_seconds` (or after `max_wait_seconds` of continuous
churn). A failed write is logged and counted, never raised: the next
successful write carries the latest state anyway.
"""

import os
import asyncio
import logging
from typing import Optional

from .. import metrics
from .asset_store import AssetStore
from .errors import SyncFailed
from .session_service import SessionGateway

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

SESSION_SYNC_DEBOUNCE_SECONDS = float(os.getenv("SESSION_SYNC_DEBOUNCE_SECONDS", "1.0"))


class SessionSync:
    def __init__(
        self,
        store: AssetStore,
        gateway: SessionGateway,
        session_id: str,
        debounce_seconds: float = SESSION_SYNC_DEBOUNCE_SECONDS,
        max_wait_seconds: Optional[float] = None,
    ):
        self._store = store
        self._gateway = gateway
        self.session_id = session_id
        self.debounce_seconds = debounce_seconds
        self.max_wait_seconds = max_wait_seconds if max_wait_seconds is not None else debounce_seconds * 5

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._first_pending: Optional[float] = None
        self._write_lock = asyncio.Lock()
        self._flushes: set[asyncio.Task] = set()
        self._synced_revision = store.revision
        self._closed = False
        self.writes = 0

    def start(self) -> None:
        """Bind to the running loop and start listening to store mutations."""
        self._loop = asyncio.get_running_loop()
        self._store.subscribe(self.notify)

    # ── Scheduling ───────────────────────────────────────────────────────

    def notify(self, revision: int = 0) -> None:
        """Store listener; safe to call from any thread."""
        if self._loop is None or self._closed or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._schedule)

    def _schedule(self) -> None:
        if self._closed:
            return
        now = self._loop.time()
        if self._first_pending is None:
            self._first_pending = now
        if self._timer is not None:
            self._timer.cancel()
        delay = min(self.debounce_seconds, max(0.0, self._first_pending + self.max_wait_seconds - now))
        self._timer = self._loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self._first_pending = None
        task = self._loop.create_task(self.flush())
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    # ── Writing ──────────────────────────────────────────────────────────

    @property
    def dirty(self) -> bool:
        return self._store.revision != self._synced_revision

    async def flush(self) -> bool:
        """Write the current snapshot if anything changed since the last write."""
        async with self._write_lock:
            snapshot = self._store.snapshot()
            if snapshot.revision == self._synced_revision:
                return True
            try:
                await self._gateway.update(self.session_id, snapshot.to_session_payload())
            except Exception as e:
                err = SyncFailed(f"Session {self.session_id} save failed: {e}")
                logger.error(str(err))
                metrics.inc_counter("errors.sync")
                metrics.record_error("session_sync", type(e).__name__, str(e))
                return False
            self._synced_revision = snapshot.revision
            self.writes += 1
            logger.debug(f"Session {self.session_id} saved at revision {snapshot.revision}")
            return True

    async def close(self) -> None:
        """Stop listening, cancel the pending timer and write anything outstanding."""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._flushes:
            await asyncio.gather(*list(self._flushes), return_exceptions=True)
        if self.dirty:
            await self.flush()
