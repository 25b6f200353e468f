from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Iterable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tokenward.storage.errors import StorageUnavailable
from tokenward.storage.models import Role, Token, TokenKind, TokenStatus

DEFAULT_TOKEN_CACHE_TTL_SECONDS = 30


def encode_cached_token(token: Token) -> str:
    return json.dumps(
        {
            "id": token.id,
            "value": token.value,
            "kind": TokenKind(token.kind).value,
            "status": TokenStatus(token.status).value,
            "owner_id": token.owner_id,
            "issued_at": token.issued_at.isoformat(),
            "updated_at": token.updated_at.isoformat(),
            "owner_email": token.owner_email,
            "owner_role": Role(token.owner_role).value if token.owner_role else None,
        },
        separators=(",", ":"),
    )


def decode_cached_token(raw: str) -> Optional[Token]:
    """Parse a cached entry; anything unreadable counts as a miss."""
    try:
        data = json.loads(raw)
        return Token(
            id=data["id"],
            value=data["value"],
            kind=TokenKind(data["kind"]),
            status=TokenStatus(data["status"]),
            owner_id=data["owner_id"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            owner_email=data.get("owner_email"),
            owner_role=Role(data["owner_role"]) if data.get("owner_role") else None,
        )
    except (json.JSONDecodeError, TypeError, KeyError, ValueError):
        return None


class RedisCache:
    """Redis-backed validation cache keyed by token value.

    ``put`` is SET NX so a reader that loaded ACTIVE from the ledger before a
    revoke committed can never overwrite the INACTIVE entry the revoker wrote.
    ``mark_inactive`` is an unconditional SET, so INACTIVE always wins.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        ttl_seconds: int = DEFAULT_TOKEN_CACHE_TTL_SECONDS,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _key(value: str) -> str:
        # Token values are long bearer secrets; keep them out of the keyspace
        digest = hashlib.sha256(value.encode()).hexdigest()
        return f"auth:token:{digest}"

    async def get(self, value: str) -> Optional[Token]:
        try:
            cached = await self.client.get(self._key(value))
        except RedisError as exc:
            raise StorageUnavailable(str(exc), backend="redis") from exc
        if not cached:
            return None
        token = decode_cached_token(cached)
        if token is None or token.value != value:
            return None
        return token

    async def put(self, token: Token) -> bool:
        try:
            stored = await self.client.set(
                self._key(token.value),
                encode_cached_token(token),
                ex=self.ttl_seconds,
                nx=True,
            )
        except RedisError as exc:
            raise StorageUnavailable(str(exc), backend="redis") from exc
        return bool(stored)

    async def evict(self, value: str) -> None:
        try:
            await self.client.delete(self._key(value))
        except RedisError as exc:
            raise StorageUnavailable(str(exc), backend="redis") from exc

    async def mark_inactive(self, tokens: Iterable[Token]) -> int:
        pipe = self.client.pipeline()
        count = 0
        for token in tokens:
            tombstone = token if not token.is_active else token.deactivated()
            pipe.set(
                self._key(tombstone.value),
                encode_cached_token(tombstone),
                ex=self.ttl_seconds,
            )
            count += 1
        if not count:
            return 0
        try:
            await pipe.execute()
        except RedisError as exc:
            raise StorageUnavailable(str(exc), backend="redis") from exc
        return count

    async def close(self) -> None:
        await self.client.aclose()
