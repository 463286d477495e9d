"""Keyed cache of external-database pools.

Opt-in alternative to opening a pool per call (DAL_POOL_REGISTRY_ENABLED=true).
Pools are keyed by (connection id, credential fingerprint) so a credential change
never reuses a pool built from old secrets. Idle pools are closed after
``idle_seconds``; a pool with live leases is only closed once its last lease ends.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Tuple

logger = logging.getLogger(__name__)

PoolKey = Tuple[str, str]


@dataclass
class _Entry:
    last_used: float
    pool: Any = None
    leases: int = 0
    stale: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PoolRegistry:
    """Caches one pool per (connection id, fingerprint).

    The registry lock only guards the entry table. Opening a pool happens under
    the entry's own lock, so a slow connect never delays leases for other keys.
    """

    def __init__(
        self, idle_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        """Initialize an empty registry."""
        self._idle_seconds = idle_seconds
        self._clock = clock
        self._entries: Dict[PoolKey, _Entry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        """Return the number of cached pools."""
        return len(self._entries)

    @asynccontextmanager
    async def lease(
        self, record, open_pool: Callable[[], Awaitable[Any]]
    ) -> AsyncIterator[Any]:
        """Yield a cached pool for ``record``, opening it with ``open_pool`` if needed."""
        key = (str(record.id), record.credential_fingerprint())
        await self.evict_idle()
        async with self._lock:
            await self._drop_other_fingerprints(key)
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry(last_used=self._clock())
                self._entries[key] = entry
            entry.leases += 1
        try:
            async with entry.lock:
                if entry.pool is None:
                    entry.pool = await open_pool()
                    logger.info("Cached pool opened for connection %s", key[0])
            yield entry.pool
        finally:
            entry.leases -= 1
            entry.last_used = self._clock()
            if entry.leases == 0:
                if entry.stale:
                    await self._close_entry(entry)
                elif entry.pool is None:
                    await self._forget(key, entry)

    async def invalidate(self, connection_id) -> None:
        """Close every cached pool for a connection."""
        async with self._lock:
            for key in [k for k in self._entries if k[0] == str(connection_id)]:
                await self._retire(key)

    async def evict_idle(self) -> int:
        """Close pools unused for longer than the idle window; returns the count."""
        now = self._clock()
        evicted = 0
        async with self._lock:
            for key, entry in list(self._entries.items()):
                if entry.leases == 0 and now - entry.last_used >= self._idle_seconds:
                    await self._retire(key)
                    evicted += 1
        return evicted

    async def close_all(self) -> None:
        """Close every cached pool (service shutdown)."""
        async with self._lock:
            for key in list(self._entries):
                await self._retire(key)

    async def _drop_other_fingerprints(self, key: PoolKey) -> None:
        for other in [k for k in self._entries if k[0] == key[0] and k != key]:
            await self._retire(other)

    async def _forget(self, key: PoolKey, entry: _Entry) -> None:
        # a failed open leaves nothing cached
        async with self._lock:
            if self._entries.get(key) is entry and entry.leases == 0:
                del self._entries[key]

    async def _retire(self, key: PoolKey) -> None:
        entry = self._entries.pop(key)
        entry.stale = True
        if entry.leases == 0:
            await self._close_entry(entry)

    async def _close_entry(self, entry: _Entry) -> None:
        async with entry.lock:
            if entry.pool is None:
                return
            pool, entry.pool = entry.pool, None
        try:
            await pool.close()
        except Exception as exc:
            logger.warning("Cached pool close failed: %s", exc)
            pool.terminate()
