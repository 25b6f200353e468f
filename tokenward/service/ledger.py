from __future__ import annotations

import contextlib
from typing import Iterable, Iterator, List, Optional, Protocol, Sequence

from tokenward.logging import get_logger
from tokenward.service.errors import StorageUnavailableError
from tokenward.storage.errors import StorageUnavailable
from tokenward.storage.models import Token, TokenKind

logger = get_logger(__name__)


class TokenStore(Protocol):
    def save_token(self, token: Token) -> Token: ...

    def find_token(
        self, value: str, kind: Optional[TokenKind] = None
    ) -> Optional[Token]: ...

    def find_active_tokens(self, owner_id: str) -> List[Token]: ...

    def list_tokens(self, owner_id: str) -> List[Token]: ...

    def revoke_all_tokens(self, owner_id: str) -> List[Token]: ...

    def replace_active_tokens(
        self,
        owner_id: str,
        new_tokens: Sequence[Token],
        *,
        expect_active: Optional[str] = None,
        keep: Optional[str] = None,
    ) -> List[Token]: ...

    def deactivate_token(self, value: str) -> Optional[Token]: ...


class TokenCache(Protocol):
    async def get(self, value: str) -> Optional[Token]: ...

    async def put(self, token: Token) -> bool: ...

    async def evict(self, value: str) -> None: ...

    async def mark_inactive(self, tokens: Iterable[Token]) -> int: ...

    async def close(self) -> None: ...


@contextlib.contextmanager
def _storage_guard(operation: str) -> Iterator[None]:
    try:
        yield
    except StorageUnavailable as exc:
        logger.error(
            "token_storage_unavailable",
            operation=operation,
            backend=exc.backend,
            error=exc.message,
        )
        raise StorageUnavailableError(
            "token storage is unavailable",
            detail={"backend": exc.backend, "operation": operation},
        ) from exc


class TokenLedger:
    """Token persistence with a cache-aside read path.

    The store is the source of truth. Every write that moves a token to
    INACTIVE is pushed through to the cache before the call returns, and
    cache population is add-if-absent, so a populate racing a revoke can
    never put an ACTIVE entry back over the INACTIVE one.
    """

    def __init__(self, store: TokenStore, cache: TokenCache) -> None:
        self.store = store
        self.cache = cache

    async def save(self, token: Token) -> Token:
        with _storage_guard("save"):
            stored = self.store.save_token(token)
        if not stored.is_active:
            await self._invalidate([stored])
        return stored

    def find_active_by_owner(self, owner_id: str) -> List[Token]:
        with _storage_guard("find_active"):
            return self.store.find_active_tokens(owner_id)

    def list_by_owner(self, owner_id: str) -> List[Token]:
        with _storage_guard("list"):
            return self.store.list_tokens(owner_id)

    def find_by_value(
        self, value: str, kind: Optional[TokenKind] = None
    ) -> Optional[Token]:
        """Read straight from the store, bypassing the cache."""
        with _storage_guard("find"):
            return self.store.find_token(value, kind)

    async def get_token(
        self, value: str, kind: Optional[TokenKind] = None
    ) -> Optional[Token]:
        cached: Optional[Token] = None
        try:
            cached = await self.cache.get(value)
        except StorageUnavailable as exc:
            logger.warning(
                "token_cache_read_failed", backend=exc.backend, error=exc.message
            )
        if cached is not None:
            return cached if kind is None or cached.kind == TokenKind(kind) else None

        # Cache the row whatever its kind so the next lookup is a hit either way
        token = self.find_by_value(value)
        if token is None:
            return None
        try:
            await self.cache.put(token)
        except StorageUnavailable as exc:
            logger.warning(
                "token_cache_populate_failed", backend=exc.backend, error=exc.message
            )
        if kind is not None and token.kind != TokenKind(kind):
            return None
        return token

    async def revoke_all(self, owner_id: str) -> List[Token]:
        with _storage_guard("revoke_all"):
            revoked = self.store.revoke_all_tokens(owner_id)
        await self._invalidate(revoked)
        return revoked

    async def rotate(
        self,
        owner_id: str,
        new_tokens: Sequence[Token],
        *,
        expect_active: Optional[str] = None,
        keep: Optional[str] = None,
    ) -> List[Token]:
        """Revoke the owner's ACTIVE tokens and store ``new_tokens`` in one unit.

        Raises ``StaleTokenState`` when ``expect_active`` is no longer ACTIVE.
        """
        with _storage_guard("rotate"):
            revoked = self.store.replace_active_tokens(
                owner_id, new_tokens, expect_active=expect_active, keep=keep
            )
        await self._invalidate(revoked)
        return revoked

    async def deactivate(self, value: str) -> Optional[Token]:
        with _storage_guard("deactivate"):
            token = self.store.deactivate_token(value)
        if token is not None:
            await self._invalidate([token])
        return token

    async def evict(self, values: Iterable[str]) -> None:
        for value in values:
            try:
                await self.cache.evict(value)
            except StorageUnavailable as exc:
                raise StorageUnavailableError(
                    "token cache is unavailable", detail={"backend": exc.backend}
                ) from exc

    async def _invalidate(self, tokens: Sequence[Token]) -> None:
        if not tokens:
            return
        try:
            await self.cache.mark_inactive(tokens)
        except StorageUnavailable as exc:
            # The ledger write stands; cached entries age out after the cache TTL
            logger.error(
                "token_cache_invalidation_failed",
                backend=exc.backend,
                count=len(tokens),
                error=exc.message,
            )
            raise StorageUnavailableError(
                "token cache invalidation failed",
                detail={"backend": exc.backend, "count": len(tokens)},
            ) from exc
