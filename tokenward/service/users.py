from __future__ import annotations

from typing import List, Optional, Protocol

from tokenward.logging import get_logger
from tokenward.service.credentials import CredentialVerifier, require_credentials
from tokenward.service.errors import ConflictError, NotFoundError
from tokenward.service.sessions import SessionManager
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import Role, User, UserStatus

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        role: Role = Role.USER,
        status: UserStatus = UserStatus.ACTIVE,
        firstname: Optional[str] = None,
        lastname: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(
        self,
        user_id: str,
        *,
        firstname: Optional[str] = None,
        lastname: Optional[str] = None,
    ) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...


class UserService:
    """Account administration; anything that changes who a user is or
    whether they may sign in also revokes their tokens."""

    def __init__(
        self,
        store: UserStore,
        credentials: CredentialVerifier,
        sessions: SessionManager,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.sessions = sessions

    def register_user(
        self,
        email: Optional[str],
        password: Optional[str],
        *,
        firstname: Optional[str] = None,
        lastname: Optional[str] = None,
        role: Role = Role.USER,
    ) -> User:
        normalized = require_credentials(email, password)
        try:
            user = self.store.create_user(
                normalized,
                role=Role(role),
                firstname=firstname,
                lastname=lastname,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "email already registered", detail={"field": "email"}
            ) from exc
        self.credentials.set_password(user.id, password or "")
        logger.info("user_registered", user_id=user.id, role=user.role.value)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=max(1, min(limit, 500)))

    def update_user(
        self,
        user_id: str,
        *,
        firstname: Optional[str] = None,
        lastname: Optional[str] = None,
    ) -> User:
        user = self.store.update_user(user_id, firstname=firstname, lastname=lastname)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def set_role(self, user_id: str, role: Role) -> User:
        user = self.store.update_user_role(user_id, Role(role))
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        # Tokens carry a role snapshot; drop them so none outlives the change
        revoked = await self.sessions.revoke_all(user_id)
        logger.info(
            "user_role_updated", user_id=user_id, role=user.role.value, revoked=revoked
        )
        return user

    async def deactivate_user(self, user_id: str) -> User:
        user = self.store.set_user_status(user_id, UserStatus.INACTIVE)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        revoked = await self.sessions.revoke_all(user_id)
        logger.info("user_deactivated", user_id=user_id, revoked=revoked)
        return user

    async def delete_user(self, user_id: str) -> None:
        self.get_user(user_id)
        ledger = self.sessions.ledger
        # Fresh revocations keep their INACTIVE cache entries until the TTL
        # runs out; rows that were already inactive can be dropped outright.
        already_inactive = [t.value for t in ledger.list_by_owner(user_id) if not t.is_active]
        await self.sessions.revoke_all(user_id)
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await ledger.evict(already_inactive)
        logger.info("user_deleted", user_id=user_id)
