from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, Optional, Tuple

from tokenward.storage.models import Token
from tokenward.storage.redis_cache import DEFAULT_TOKEN_CACHE_TTL_SECONDS

_MAX_CACHE_SIZE = 10000


class LocalTokenCache:
    """In-process stand-in for ``RedisCache`` with the same put/mark rules.

    Used when Redis is unavailable under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.
    The methods are async to match ``RedisCache`` but only take a thread lock.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_TOKEN_CACHE_TTL_SECONDS,
        max_size: int = _MAX_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: Dict[str, Tuple[Token, float]] = {}
        self._lock = threading.Lock()

    def _live_entry(self, value: str) -> Optional[Token]:
        entry = self._entries.get(value)
        if entry is None:
            return None
        token, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(value, None)
            return None
        return token

    def _purge_expired(self) -> None:
        now = self._clock()
        for value in [v for v, (_, expires_at) in self._entries.items() if expires_at <= now]:
            del self._entries[value]

    def _make_room(self) -> bool:
        """Free a slot without dropping a live tombstone.

        Returns False when every remaining entry is an unexpired INACTIVE
        tombstone; losing one would let a stale ACTIVE put back in.
        """
        if len(self._entries) < self.max_size:
            return True
        self._purge_expired()
        if len(self._entries) < self.max_size:
            return True
        active = sorted(
            (item for item in self._entries.items() if item[1][0].is_active),
            key=lambda item: item[1][1],
        )
        if not active:
            return False
        for value, _ in active[: max(1, self.max_size // 10)]:
            del self._entries[value]
        return True

    async def get(self, value: str) -> Optional[Token]:
        with self._lock:
            token = self._live_entry(value)
            return replace(token) if token else None

    async def put(self, token: Token) -> bool:
        with self._lock:
            if self._live_entry(token.value) is not None:
                return False
            if not self._make_room():
                return False
            self._entries[token.value] = (
                replace(token),
                self._clock() + self.ttl_seconds,
            )
            return True

    async def evict(self, value: str) -> None:
        with self._lock:
            self._entries.pop(value, None)

    async def mark_inactive(self, tokens: Iterable[Token]) -> int:
        count = 0
        with self._lock:
            expires_at = self._clock() + self.ttl_seconds
            for token in tokens:
                tombstone = token if not token.is_active else token.deactivated()
                # Tombstones are stored even past max_size; they age out after the TTL
                if tombstone.value not in self._entries:
                    self._make_room()
                self._entries[tombstone.value] = (replace(tombstone), expires_at)
                count += 1
        return count

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
