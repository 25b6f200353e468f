from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation, StaleTokenState
from tokenward.storage.models import (
    LoginAttempt,
    Role,
    Token,
    TokenKind,
    TokenStatus,
    User,
    UserStatus,
)


class MemoryStore:
    """In-process backing store for development and tests.

    Every read and write runs under one ``RLock``, which trivially serializes
    ledger mutations for any given owner. State is mirrored to
    ``<fs_root>/state/memory_store.json`` when ``fs_root`` is set.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # token value -> Token; value is the natural key of the ledger
        self.tokens: Dict[str, Token] = {}
        self._token_ids: Dict[str, str] = {}
        self._owner_tokens: Dict[str, List[str]] = {}
        self.login_attempts: List[LoginAttempt] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # users
    def create_user(
        self,
        email: str,
        *,
        role: Role = Role.USER,
        status: UserStatus = UserStatus.ACTIVE,
        firstname: Optional[str] = None,
        lastname: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                role=Role(role),
                status=UserStatus(status),
                firstname=firstname,
                lastname=lastname,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    def update_user(
        self,
        user_id: str,
        *,
        firstname: Optional[str] = None,
        lastname: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if firstname is not None:
                user.firstname = firstname
            if lastname is not None:
                user.lastname = lastname
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            self._persist_state()
            return replace(user)

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for value in self._owner_tokens.pop(user_id, []):
                token = self.tokens.pop(value, None)
                if token:
                    self._token_ids.pop(token.id, None)
            self.login_attempts = [
                a for a in self.login_attempts if a.user_id != user_id
            ]
            self._persist_state()
            return True

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("credential user missing", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # token ledger
    def _with_owner(self, token: Token) -> Token:
        owner = self.users.get(token.owner_id)
        return replace(
            token,
            owner_email=owner.email if owner else None,
            owner_role=owner.role if owner else None,
        )

    def _check_writable(self, token: Token) -> Optional[Token]:
        """Return the stored row for ``token`` after enforcing lifecycle rules."""
        if token.owner_id not in self.users:
            raise ConstraintViolation("token owner missing", {"owner_id": token.owner_id})
        existing = self.tokens.get(token.value)
        if existing is not None and existing.id != token.id:
            raise ConstraintViolation("token value already exists", {"field": "value"})
        stored_value = self._token_ids.get(token.id)
        if stored_value is not None and stored_value != token.value:
            raise ConstraintViolation("token value is immutable", {"token_id": token.id})
        if existing is not None:
            if existing.owner_id != token.owner_id or existing.kind != token.kind:
                raise ConstraintViolation("token identity is immutable", {"token_id": token.id})
            if existing.status == TokenStatus.INACTIVE and token.status == TokenStatus.ACTIVE:
                raise ConstraintViolation("token cannot be reactivated", {"token_id": token.id})
        return existing

    def _put_token(self, token: Token) -> Token:
        existing = self._check_writable(token)
        row = replace(token, owner_email=None, owner_role=None)
        if existing is None:
            self._token_ids[row.id] = row.value
            self._owner_tokens.setdefault(row.owner_id, []).append(row.value)
        else:
            row = replace(existing, status=row.status, updated_at=row.updated_at)
        self.tokens[row.value] = row
        return row

    def _revoke_owner(self, owner_id: str, keep: Optional[str] = None) -> List[Token]:
        now = self._now()
        revoked: List[Token] = []
        for value in self._owner_tokens.get(owner_id, []):
            token = self.tokens[value]
            if token.status != TokenStatus.ACTIVE or value == keep:
                continue
            updated = token.deactivated(now)
            self.tokens[value] = updated
            revoked.append(self._with_owner(updated))
        return revoked

    def save_token(self, token: Token) -> Token:
        with self._data_lock:
            row = self._put_token(token)
            self._persist_state()
            return self._with_owner(row)

    def find_token(self, value: str, kind: Optional[TokenKind] = None) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(value)
            if token is None or (kind is not None and token.kind != TokenKind(kind)):
                return None
            return self._with_owner(token)

    def find_active_tokens(self, owner_id: str) -> List[Token]:
        with self._data_lock:
            return [
                self._with_owner(self.tokens[value])
                for value in self._owner_tokens.get(owner_id, [])
                if self.tokens[value].status == TokenStatus.ACTIVE
            ]

    def list_tokens(self, owner_id: str) -> List[Token]:
        with self._data_lock:
            return [
                self._with_owner(self.tokens[value])
                for value in self._owner_tokens.get(owner_id, [])
            ]

    def revoke_all_tokens(self, owner_id: str) -> List[Token]:
        with self._data_lock:
            revoked = self._revoke_owner(owner_id)
            if revoked:
                self._persist_state()
            return revoked

    def replace_active_tokens(
        self,
        owner_id: str,
        new_tokens: Sequence[Token],
        *,
        expect_active: Optional[str] = None,
        keep: Optional[str] = None,
    ) -> List[Token]:
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("token owner missing", {"owner_id": owner_id})
            if expect_active is not None:
                current = self.tokens.get(expect_active)
                if (
                    current is None
                    or current.owner_id != owner_id
                    or current.status != TokenStatus.ACTIVE
                ):
                    raise StaleTokenState("token is no longer active", {"owner_id": owner_id})
            for token in new_tokens:
                if token.owner_id != owner_id:
                    raise ConstraintViolation("token owner mismatch", {"owner_id": owner_id})
                if token.value in self.tokens:
                    raise ConstraintViolation("token value already exists", {"field": "value"})
            revoked = self._revoke_owner(owner_id, keep=keep)
            for token in new_tokens:
                self._put_token(token)
            self._persist_state()
            return revoked

    def deactivate_token(self, value: str) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(value)
            if token is None:
                return None
            if token.status == TokenStatus.ACTIVE:
                token = token.deactivated(self._now())
                self.tokens[value] = token
                self._persist_state()
            return self._with_owner(token)

    # login attempts
    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            self.login_attempts.append(replace(attempt))
            self._persist_state()
            return attempt

    def count_failed_attempts_since(self, user_id: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.login_attempts
                if a.user_id == user_id and not a.successful and a.timestamp >= since
            )

    def list_login_attempts(self, user_id: str, limit: int = 50) -> List[LoginAttempt]:
        with self._data_lock:
            matching = [a for a in self.login_attempts if a.user_id == user_id]
            matching.sort(key=lambda a: a.timestamp, reverse=True)
            return [replace(a) for a in matching[:limit]]

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "login_attempts": [
                self._serialize_attempt(a) for a in self.login_attempts
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tokens = {}
        self._token_ids = {}
        self._owner_tokens = {}
        for raw in data.get("tokens", []):
            token = self._deserialize_token(raw)
            self.tokens[token.value] = token
            self._token_ids[token.id] = token.value
            self._owner_tokens.setdefault(token.owner_id, []).append(token.value)
        self.login_attempts = [
            self._deserialize_attempt(a) for a in data.get("login_attempts", [])
        ]
        self.logger.info(
            "memory_store_loaded", users=len(self.users), ledger_rows=len(self.tokens)
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role.value,
            "status": user.status.value,
            "firstname": user.firstname,
            "lastname": user.lastname,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            role=Role(data.get("role", Role.USER.value)),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            firstname=data.get("firstname"),
            lastname=data.get("lastname"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_token(self, token: Token) -> dict:
        return {
            "id": token.id,
            "value": token.value,
            "kind": token.kind.value,
            "status": token.status.value,
            "owner_id": token.owner_id,
            "issued_at": self._serialize_datetime(token.issued_at),
            "updated_at": self._serialize_datetime(token.updated_at),
        }

    def _deserialize_token(self, data: dict) -> Token:
        return Token(
            id=str(data["id"]),
            value=data["value"],
            kind=TokenKind(data["kind"]),
            status=TokenStatus(data["status"]),
            owner_id=str(data["owner_id"]),
            issued_at=self._deserialize_datetime(data["issued_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_attempt(self, attempt: LoginAttempt) -> dict:
        return {
            "id": attempt.id,
            "user_id": attempt.user_id,
            "ip_address": attempt.ip_address,
            "user_agent": attempt.user_agent,
            "successful": attempt.successful,
            "timestamp": self._serialize_datetime(attempt.timestamp),
            "failure_reason": attempt.failure_reason,
        }

    def _deserialize_attempt(self, data: dict) -> LoginAttempt:
        return LoginAttempt(
            id=str(data["id"]),
            user_id=data.get("user_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            successful=bool(data["successful"]),
            timestamp=self._deserialize_datetime(data["timestamp"]),
            failure_reason=data.get("failure_reason"),
        )

