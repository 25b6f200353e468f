from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol

from tokenward.logging import get_logger
from tokenward.storage.models import LoginAttempt, User

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Any) -> "ClientInfo":
        """Build from a Starlette request; the first X-Forwarded-For hop wins."""
        ip_address: Optional[str] = None
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip_address = forwarded.split(",")[0].strip() or None
        if not ip_address and request.client:
            ip_address = request.client.host
        return cls(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


class LoginAttemptStore(Protocol):
    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt: ...

    def count_failed_attempts_since(self, user_id: str, since: datetime) -> int: ...

    def list_login_attempts(self, user_id: str, limit: int = 50) -> List[LoginAttempt]: ...


class LoginAttemptService:
    """Records login outcomes and flags accounts with bursts of failures."""

    def __init__(
        self,
        store: LoginAttemptStore,
        *,
        threshold: int = 5,
        window_minutes: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.window = timedelta(minutes=window_minutes)
        self._clock = clock

    def record_attempt(
        self,
        user: Optional[User],
        client: Optional[ClientInfo],
        *,
        successful: bool,
        reason: Optional[str] = None,
    ) -> LoginAttempt:
        client = client or ClientInfo()
        attempt = LoginAttempt.new(
            user.id if user else None,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            successful=successful,
            failure_reason=reason,
        )
        self.store.add_login_attempt(attempt)
        logger.info(
            "login_attempt_recorded",
            user_id=attempt.user_id,
            successful=successful,
            reason=attempt.failure_reason,
            ip_address=client.ip_address,
        )
        return attempt

    def is_suspicious(self, user_id: Optional[str]) -> bool:
        if not user_id or self.threshold <= 0:
            return False
        since = self._clock() - self.window
        failures = self.store.count_failed_attempts_since(user_id, since)
        return failures >= self.threshold

    def recent_attempts(self, user_id: str, limit: int = 50) -> List[LoginAttempt]:
        return self.store.list_login_attempts(user_id, limit=max(1, min(limit, 500)))
