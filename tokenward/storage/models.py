from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class TokenKind(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"


class TokenStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass
class User:
    id: str
    email: str
    role: Role = Role.USER
    status: UserStatus = UserStatus.ACTIVE
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class Token:
    """A ledger row. ``value`` never changes after creation; ``status`` only
    ever moves ACTIVE -> INACTIVE.

    ``owner_email`` and ``owner_role`` are a snapshot of the owning user filled
    in on reads; they are not stored with the token.
    """

    id: str
    value: str
    kind: TokenKind
    owner_id: str
    status: TokenStatus = TokenStatus.ACTIVE
    issued_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    owner_email: Optional[str] = None
    owner_role: Optional[Role] = None

    @classmethod
    def new(
        cls,
        value: str,
        kind: TokenKind,
        owner: User,
        *,
        issued_at: Optional[datetime] = None,
    ) -> "Token":
        now = issued_at or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            value=value,
            kind=kind,
            owner_id=owner.id,
            status=TokenStatus.ACTIVE,
            issued_at=now,
            updated_at=now,
            owner_email=owner.email,
            owner_role=owner.role,
        )

    @property
    def is_active(self) -> bool:
        return self.status == TokenStatus.ACTIVE

    def deactivated(self, at: Optional[datetime] = None) -> "Token":
        """Return an INACTIVE copy of this token."""
        return Token(
            id=self.id,
            value=self.value,
            kind=self.kind,
            owner_id=self.owner_id,
            status=TokenStatus.INACTIVE,
            issued_at=self.issued_at,
            updated_at=at or _utcnow(),
            owner_email=self.owner_email,
            owner_role=self.owner_role,
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"


@dataclass
class LoginAttempt:
    id: str
    user_id: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    successful: bool
    timestamp: datetime = field(default_factory=_utcnow)
    failure_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: Optional[str],
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        successful: bool,
        failure_reason: Optional[str] = None,
    ) -> "LoginAttempt":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            successful=successful,
            timestamp=_utcnow(),
            failure_reason=None if successful else failure_reason,
        )
