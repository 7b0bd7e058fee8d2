"""
Short-lived, caller-owned cache of ledger reads.

Keys are ``(entity, address, tag)`` where ``tag`` is a block height or a
block tag such as "latest". A cache lives only as long as the object holding
it; nothing is persisted.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

from django.conf import settings

logger = logging.getLogger(__name__)

# Entity names used as the first element of a cache key
ACCOUNT = "account"
PENDING = "pending"
BALANCE = "balance"
ALLOWANCE = "allowance"
BONDS = "bonds"
REPORT = "report"
DIRECTS = "directs"
GLOBALS = "globals"

CacheKey = Tuple[str, str, str]


class ReadCache:
    def __init__(self, ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = settings.READ_CACHE_TTL if ttl is None else ttl
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[float, Any]] = {}

    @staticmethod
    def key(entity: str, address: Optional[str] = None, tag: str = "latest") -> CacheKey:
        return (entity, (address or "").lower(), str(tag))

    def get(self, key: CacheKey) -> Tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        stored_at, value = entry
        if self.ttl and self._clock() - stored_at > self.ttl:
            del self._entries[key]
            return False, None
        return True, value

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    async def get_or_load(self, key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        hit, value = self.get(key)
        if hit:
            return value
        value = await loader()
        self.set(key, value)
        return value

    def invalidate(self, entities: Optional[Iterable[str]] = None, address: Optional[str] = None) -> int:
        """Drop matching entries; returns how many were removed."""
        wanted = set(entities) if entities is not None else None
        addr = address.lower() if address else None
        doomed = [
            key for key in self._entries
            if (wanted is None or key[0] in wanted) and (addr is None or key[1] in (addr, ""))
        ]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cached reads (entities={wanted}, address={addr})")
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
