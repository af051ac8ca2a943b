from typing import Optional, Any, Dict, Callable
from dataclasses import dataclass
import asyncio
import hashlib
import time
from loguru import logger

@dataclass
class CacheEntry:
    value: Any
    expire_at: float

class CacheService:
    """In-memory TTL cache for IUAM solve results.

    Entries are evicted lazily when read after expiry and proactively by a
    background sweep task, so memory stays bounded regardless of read traffic.
    """

    def __init__(self, default_ttl_ms: int = 30 * 60 * 1000,
                 sweep_interval: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize cache service"""
        self.default_ttl_ms = default_ttl_ms
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @staticmethod
    def key_for(domain: str, user_agent: Optional[str]) -> str:
        """Stable cache key for an IUAM request: domain plus user agent"""
        key_string = f"{domain}|{user_agent or ''}"
        return f"iuam:{hashlib.sha256(key_string.encode()).hexdigest()}"

    def __len__(self) -> int:
        return len(self._entries)

    def read(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if absent or expired"""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() < entry.expire_at:
            return entry.value
        del self._entries[key]
        logger.debug(f"Evicted stale cache entry {key[:16]}")
        return None

    def write(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        ttl_ms = ttl_ms or self.default_ttl_ms
        self._entries[key] = CacheEntry(value=value, expire_at=self._clock() + ttl_ms / 1000)
        logger.debug(f"Cached {key[:16]} for {ttl_ms}ms")

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def sweep(self) -> int:
        """Remove every expired entry, returning how many were dropped"""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expire_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    async def _sweep_forever(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Cache sweep failed: {str(e)}")

    def start(self):
        """Start the background sweeper on the running loop"""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())
            logger.info(f"Cache sweeper started (interval {self.sweep_interval}s)")

    async def stop(self):
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Cache sweeper stopped")
