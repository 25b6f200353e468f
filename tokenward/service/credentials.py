from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tokenward.logging import get_logger
from tokenward.service.errors import (
    AuthenticationError,
    InvalidRequestError,
    UserNotFoundError,
)
from tokenward.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def require_credentials(email: Optional[str], password: Optional[str]) -> str:
    """Reject blank input before anything touches storage."""
    normalized = normalize_email(email)
    if not normalized:
        raise InvalidRequestError("email is required", detail={"field": "email"})
    if password is None or not password.strip():
        raise InvalidRequestError("password is required", detail={"field": "password"})
    return normalized


class CredentialVerifier:
    """Checks an email/password pair against the stored argon2 hash."""

    def __init__(
        self, store: CredentialStore, *, hasher: Optional[PasswordHasher] = None
    ) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def find_user(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.store.get_user_by_email(normalized)

    def verify_credentials(self, email: str, password: str) -> User:
        normalized = require_credentials(email, password)
        user = self.store.get_user_by_email(normalized)
        if not user:
            raise UserNotFoundError(
                "invalid credentials", detail={"reason": "user_not_found"}
            )
        if not user.is_active:
            raise AuthenticationError(
                "account is disabled", detail={"reason": "account_inactive"}
            )
        if not self.verify_password(user.id, password):
            raise AuthenticationError(
                "invalid credentials", detail={"reason": "bad_credentials"}
            )
        return user

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        if password is None or not password.strip():
            raise InvalidRequestError("password is required", detail={"field": "password"})
        digest, algo = self.hash_password(password)
        self.store.save_password(user_id, digest, algo)
