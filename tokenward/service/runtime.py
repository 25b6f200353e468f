from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from tokenward.config import get_settings, reset_settings_cache
from tokenward.logging import get_logger
from tokenward.service.credentials import CredentialVerifier
from tokenward.service.ledger import TokenLedger
from tokenward.service.login_attempts import LoginAttemptService
from tokenward.service.sessions import SessionManager
from tokenward.service.signer import TokenSigner
from tokenward.service.users import UserService
from tokenward.storage.local_cache import LocalTokenCache
from tokenward.storage.memory import MemoryStore
from tokenward.storage.postgres import PostgresStore
from tokenward.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL before it is logged.

    redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, LocalTokenCache]
        redis_error: Exception | None = None
        redis_cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                candidate = RedisCache(
                    self.settings.redis_url,
                    ttl_seconds=self.settings.token_cache_ttl_seconds,
                )
                candidate.verify_connection()
                redis_cache = candidate
            except (RedisError, OSError) as exc:
                redis_error = exc

        if redis_cache is not None:
            self.cache = redis_cache
        else:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for the token validation cache; start Redis or "
                    "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; the validation "
                    "cache is per-process only."
                ),
                mode=fallback_mode,
            )
            self.cache = LocalTokenCache(
                ttl_seconds=self.settings.token_cache_ttl_seconds
            )

        self.signer = TokenSigner(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.jwt_clock_skew_seconds,
        )
        self.credentials = CredentialVerifier(self.store)
        self.ledger = TokenLedger(self.store, self.cache)
        self.login_attempts = LoginAttemptService(
            self.store,
            threshold=self.settings.login_failure_threshold,
            window_minutes=self.settings.login_failure_window_minutes,
        )
        self.sessions = SessionManager(
            self.ledger,
            self.signer,
            self.credentials,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            rotate_refresh=self.settings.refresh_token_rotation,
            attempts=self.login_attempts,
            lockout_enabled=self.settings.login_lockout_enabled,
        )
        self.users = UserService(self.store, self.credentials, self.sessions)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            refresh_rotation=self.settings.refresh_token_rotation,
            lockout_enabled=self.settings.login_lockout_enabled,
        )

    def health_probes(self) -> Dict[str, Tuple[str, Optional[Callable[[], None]]]]:
        """Component name to (backend type, blocking probe).

        In-process backends have no probe and always report healthy.
        """
        probes: Dict[str, Tuple[str, Optional[Callable[[], None]]]] = {}
        if isinstance(self.store, PostgresStore):
            probes["database"] = ("postgres", self.store.ping)
        else:
            probes["database"] = ("memory", None)
        if isinstance(self.cache, RedisCache):
            probes["cache"] = ("redis", self.cache.verify_connection)
        else:
            probes["cache"] = ("local", None)
        return probes

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check keeps two first requests from building two runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.cache.close())
            else:
                loop.create_task(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
