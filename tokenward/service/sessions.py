from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional, Tuple

import structlog

from tokenward.logging import get_logger
from tokenward.service.credentials import CredentialVerifier, require_credentials
from tokenward.service.errors import (
    AccountLockedError,
    AuthenticationError,
    InvalidRequestError,
    InvalidTokenError,
    TokenNotFoundError,
)
from tokenward.service.ledger import TokenLedger
from tokenward.service.login_attempts import ClientInfo, LoginAttemptService
from tokenward.service.signer import TokenSigner
from tokenward.storage.errors import StaleTokenState
from tokenward.storage.models import Role, Token, TokenKind, TokenPair, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str
    role: Role
    token_value: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass
class TokenValidation:
    valid: bool
    subject: Optional[str] = None
    roles: List[str] = field(default_factory=list)


current_principal: ContextVar[Optional[Principal]] = ContextVar(
    "current_principal", default=None
)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    value = header.split(" ", 1)[1].strip()
    return value or None


class SessionManager:
    """Login, refresh, validation and logout over the token ledger.

    A user holds at most one ACTIVE access/refresh pair: every successful
    authenticate or refresh revokes what was there and stores the new pair
    in a single ledger call.
    """

    def __init__(
        self,
        ledger: TokenLedger,
        signer: TokenSigner,
        credentials: CredentialVerifier,
        *,
        access_ttl: timedelta = timedelta(minutes=60),
        refresh_ttl: timedelta = timedelta(days=7),
        rotate_refresh: bool = True,
        attempts: Optional[LoginAttemptService] = None,
        lockout_enabled: bool = True,
    ) -> None:
        self.ledger = ledger
        self.signer = signer
        self.credentials = credentials
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.rotate_refresh = rotate_refresh
        self.attempts = attempts
        self.lockout_enabled = lockout_enabled
        self.logger = logger

    def _mint(self, user: User, kind: TokenKind) -> Token:
        ttl = self.access_ttl if kind == TokenKind.ACCESS else self.refresh_ttl
        value = self.signer.issue(
            user.email,
            ttl,
            {"role": Role(user.role).value, "token_type": kind.value.lower()},
        )
        return Token.new(value, kind, user)

    async def authenticate(
        self,
        email: Optional[str],
        password: Optional[str],
        client: Optional[ClientInfo] = None,
    ) -> TokenPair:
        normalized = require_credentials(email, password)
        candidate: Optional[User] = None
        if self.attempts is not None:
            candidate = self.credentials.find_user(normalized)
            if (
                candidate is not None
                and self.lockout_enabled
                and self.attempts.is_suspicious(candidate.id)
            ):
                self.attempts.record_attempt(
                    candidate, client, successful=False, reason="account_locked"
                )
                self.logger.warning("login_locked_out", user_id=candidate.id)
                raise AccountLockedError(
                    "too many failed login attempts",
                    detail={"reason": "account_locked"},
                )
        try:
            user = self.credentials.verify_credentials(normalized, password or "")
        except AuthenticationError as exc:
            if self.attempts is not None:
                self.attempts.record_attempt(
                    candidate, client, successful=False, reason=exc.reason
                )
            raise

        access = self._mint(user, TokenKind.ACCESS)
        refresh = self._mint(user, TokenKind.REFRESH)
        revoked = await self.ledger.rotate(user.id, [access, refresh])
        if self.attempts is not None:
            self.attempts.record_attempt(user, client, successful=True)
        self.logger.info(
            "tokens_issued", user_id=user.id, flow="login", revoked=len(revoked)
        )
        return TokenPair(access_token=access.value, refresh_token=refresh.value)

    async def refresh(self, refresh_value: Optional[str]) -> TokenPair:
        if not refresh_value or not refresh_value.strip():
            raise InvalidRequestError(
                "refresh token is required", detail={"field": "refresh_token"}
            )
        stored = await self.ledger.get_token(refresh_value, TokenKind.REFRESH)
        if stored is None:
            raise TokenNotFoundError("refresh token not found")
        if not self._is_valid(stored):
            self.logger.info(
                "refresh_rejected",
                user_id=stored.owner_id,
                reason="inactive" if not stored.is_active else "signature",
            )
            raise InvalidTokenError(
                "refresh token is invalid or expired",
                detail={"reason": "invalid_token"},
            )

        owner = User(
            id=stored.owner_id,
            email=stored.owner_email or "",
            role=Role(stored.owner_role or Role.USER),
        )
        access = self._mint(owner, TokenKind.ACCESS)
        if self.rotate_refresh:
            new_tokens = [access, self._mint(owner, TokenKind.REFRESH)]
            keep = None
        else:
            new_tokens = [access]
            keep = refresh_value
        try:
            revoked = await self.ledger.rotate(
                owner.id, new_tokens, expect_active=refresh_value, keep=keep
            )
        except StaleTokenState as exc:
            # Another refresh consumed this token first
            self.logger.info("refresh_rejected", user_id=owner.id, reason="superseded")
            raise InvalidTokenError(
                "refresh token is invalid or expired",
                detail={"reason": "invalid_token"},
            ) from exc
        self.logger.info(
            "tokens_issued",
            user_id=owner.id,
            flow="refresh",
            rotated=self.rotate_refresh,
            revoked=len(revoked),
        )
        refresh_out = new_tokens[1].value if self.rotate_refresh else refresh_value
        return TokenPair(access_token=access.value, refresh_token=refresh_out)

    def _is_valid(self, stored: Token) -> bool:
        if not stored.is_active or not stored.owner_email:
            return False
        valid, _ = self.signer.verify(stored.value, stored.owner_email)
        return valid

    async def _lookup(
        self, value: Optional[str], kind: Optional[TokenKind]
    ) -> Tuple[Optional[Token], bool]:
        if not value or not value.strip():
            return None, False
        stored = await self.ledger.get_token(value, kind)
        if stored is None:
            return None, False
        return stored, self._is_valid(stored)

    async def validate(
        self, value: Optional[str], kind: Optional[TokenKind] = None
    ) -> TokenValidation:
        stored, valid = await self._lookup(value, kind)
        if stored is None:
            return TokenValidation(valid=False, subject=None, roles=[])
        roles = [Role(stored.owner_role).value] if stored.owner_role else []
        return TokenValidation(valid=valid, subject=stored.owner_email, roles=roles)

    async def authenticate_bearer(
        self, authorization: Optional[str], kind: TokenKind = TokenKind.ACCESS
    ) -> Principal:
        value = extract_bearer(authorization)
        if not value:
            raise AuthenticationError(
                "bearer token required", detail={"reason": "missing_token"}
            )
        stored, valid = await self._lookup(value, kind)
        if stored is None or not valid:
            raise InvalidTokenError(
                "invalid or expired token", detail={"reason": "invalid_token"}
            )
        principal = Principal(
            user_id=stored.owner_id,
            email=stored.owner_email or "",
            role=Role(stored.owner_role or Role.USER),
            token_value=value,
        )
        current_principal.set(principal)
        structlog.contextvars.bind_contextvars(user_id=principal.user_id)
        return principal

    async def logout(self, value: Optional[str]) -> None:
        await self._deactivate(value, action="logout")

    async def disable(self, value: Optional[str]) -> None:
        await self._deactivate(value, action="disable")

    async def _deactivate(self, value: Optional[str], *, action: str) -> None:
        if not value or not value.strip():
            self.logger.info("token_not_found_on_logout", action=action, reason="blank")
            return
        token = await self.ledger.deactivate(value)
        if token is None:
            self.logger.info("token_not_found_on_logout", action=action)
            return
        self.logger.info(
            "token_deactivated",
            action=action,
            user_id=token.owner_id,
            kind=token.kind.value,
        )
        current_principal.set(None)
        structlog.contextvars.unbind_contextvars("user_id")

    async def revoke_all(self, user_id: str) -> int:
        revoked = await self.ledger.revoke_all(user_id)
        self.logger.info("tokens_revoked", user_id=user_id, count=len(revoked))
        return len(revoked)
