"""Validation cache behaviour for the in-process and Redis backends."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tokenward.storage.errors import StorageUnavailable
from tokenward.storage.local_cache import LocalTokenCache
from tokenward.storage.models import Role, Token, TokenKind, TokenStatus, User
from tokenward.storage.redis_cache import (
    RedisCache,
    decode_cached_token,
    encode_cached_token,
)


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _user(email="cache@example.com"):
    return User(id="user-1", email=email, role=Role.ADMIN)


def _token(value="tok-1", kind=TokenKind.ACCESS):
    return Token.new(value, kind, _user())


class TestLocalTokenCache:
    @pytest.mark.asyncio
    async def test_put_is_add_if_absent(self):
        cache = LocalTokenCache(ttl_seconds=30)
        first = _token()
        assert await cache.put(first) is True
        assert await cache.put(first.deactivated()) is False
        assert (await cache.get("tok-1")).status == TokenStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_tombstone_cannot_be_overwritten_by_put(self):
        cache = LocalTokenCache(ttl_seconds=30)
        token = _token()
        await cache.put(token)

        assert await cache.mark_inactive([token]) == 1
        assert await cache.put(token) is False
        assert (await cache.get("tok-1")).status == TokenStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_mark_inactive_writes_tombstone_for_uncached_token(self):
        cache = LocalTokenCache(ttl_seconds=30)
        await cache.mark_inactive([_token("never-cached")])
        cached = await cache.get("never-cached")
        assert cached is not None and cached.status == TokenStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self):
        clock = ManualClock()
        cache = LocalTokenCache(ttl_seconds=30, clock=clock)
        await cache.put(_token())
        clock.now = 29.9
        assert await cache.get("tok-1") is not None
        clock.now = 30.0
        assert await cache.get("tok-1") is None
        assert await cache.put(_token()) is True

    @pytest.mark.asyncio
    async def test_eviction_prefers_active_entries(self):
        clock = ManualClock()
        cache = LocalTokenCache(ttl_seconds=30, max_size=10, clock=clock)
        await cache.mark_inactive([_token("revoked")])
        for i in range(9):
            clock.now += 0.01
            await cache.put(_token(f"active-{i}"))

        await cache.put(_token("overflow"))

        assert len(cache) == 10
        assert await cache.get("active-0") is None
        assert (await cache.get("revoked")).status == TokenStatus.INACTIVE
        assert await cache.get("overflow") is not None

    @pytest.mark.asyncio
    async def test_full_of_tombstones_refuses_put(self):
        clock = ManualClock()
        cache = LocalTokenCache(ttl_seconds=30, max_size=3, clock=clock)
        revoked = [_token(f"revoked-{i}") for i in range(3)]
        await cache.mark_inactive(revoked)

        assert await cache.put(_token("fresh")) is False

        assert await cache.get("fresh") is None
        for token in revoked:
            assert (await cache.get(token.value)).status == TokenStatus.INACTIVE
        # a stale ACTIVE snapshot still cannot replace any tombstone
        assert await cache.put(revoked[0]) is False

    @pytest.mark.asyncio
    async def test_tombstones_written_past_capacity(self):
        cache = LocalTokenCache(ttl_seconds=30, max_size=2)
        await cache.mark_inactive([_token(f"revoked-{i}") for i in range(4)])
        assert len(cache) == 4

    @pytest.mark.asyncio
    async def test_expired_tombstones_make_room(self):
        clock = ManualClock()
        cache = LocalTokenCache(ttl_seconds=30, max_size=2, clock=clock)
        await cache.mark_inactive([_token("old-a"), _token("old-b")])
        clock.now = 31.0

        assert await cache.put(_token("fresh")) is True
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_get_returns_copy(self):
        cache = LocalTokenCache(ttl_seconds=30)
        await cache.put(_token())
        fetched = await cache.get("tok-1")
        fetched.status = TokenStatus.INACTIVE
        assert (await cache.get("tok-1")).status == TokenStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_evict_and_close(self):
        cache = LocalTokenCache(ttl_seconds=30)
        await cache.put(_token("a"))
        await cache.put(_token("b"))
        await cache.evict("a")
        await cache.evict("missing")
        assert await cache.get("a") is None
        await cache.close()
        assert len(cache) == 0


class TestCachedTokenCodec:
    def test_encoding_carries_owner_snapshot(self):
        token = _token(kind=TokenKind.REFRESH)
        decoded = decode_cached_token(encode_cached_token(token))
        assert decoded == token

    @pytest.mark.parametrize(
        "raw",
        ["", "not json", "[]", '{"value": "x"}', '{"id":"1","value":"v","kind":"BOGUS"}'],
    )
    def test_corrupt_entries_are_misses(self, raw):
        assert decode_cached_token(raw) is None


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.commands = []

    def set(self, key, value, ex=None):
        self.commands.append((key, value, ex))
        return self

    async def execute(self):
        if self.client.fail:
            raise RedisConnectionError("connection refused")
        for key, value, ex in self.commands:
            self.client.data[key] = value
            self.client.ttls[key] = ex
        return [True] * len(self.commands)


class FakeAsyncRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    def pipeline(self):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def redis_cache():
    cache = RedisCache("redis://localhost:6379/0", ttl_seconds=45)
    cache.client = FakeAsyncRedis()
    return cache


class TestRedisCache:
    def test_key_hides_token_value(self):
        key = RedisCache._key("secret-bearer-value")
        assert key.startswith("auth:token:")
        assert "secret-bearer-value" not in key

    @pytest.mark.asyncio
    async def test_put_uses_nx_and_ttl(self, redis_cache):
        token = _token()
        assert await redis_cache.put(token) is True
        assert await redis_cache.put(token.deactivated()) is False

        key = RedisCache._key("tok-1")
        assert redis_cache.client.ttls[key] == 45
        assert (await redis_cache.get("tok-1")).status == TokenStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_mark_inactive_overwrites(self, redis_cache):
        access, refresh = _token("a"), _token("r", TokenKind.REFRESH)
        await redis_cache.put(access)

        assert await redis_cache.mark_inactive([access, refresh]) == 2
        assert (await redis_cache.get("a")).status == TokenStatus.INACTIVE
        assert (await redis_cache.get("r")).status == TokenStatus.INACTIVE
        assert await redis_cache.put(access) is False

    @pytest.mark.asyncio
    async def test_mark_inactive_empty_is_noop(self, redis_cache):
        redis_cache.client.fail = True
        assert await redis_cache.mark_inactive([]) == 0

    @pytest.mark.asyncio
    async def test_mismatched_entry_is_a_miss(self, redis_cache):
        other = _token("other")
        redis_cache.client.data[RedisCache._key("tok-1")] = encode_cached_token(other)
        assert await redis_cache.get("tok-1") is None

    @pytest.mark.asyncio
    async def test_redis_errors_become_storage_unavailable(self, redis_cache):
        redis_cache.client.fail = True
        token = _token()
        for call in (
            redis_cache.get("tok-1"),
            redis_cache.put(token),
            redis_cache.evict("tok-1"),
            redis_cache.mark_inactive([token]),
        ):
            with pytest.raises(StorageUnavailable) as excinfo:
                await call
            assert excinfo.value.backend == "redis"

    @pytest.mark.asyncio
    async def test_close_releases_client(self, redis_cache):
        await redis_cache.close()
        assert redis_cache.client.closed is True
