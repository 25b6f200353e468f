from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tokenward.logging import get_logger
from tokenward.storage.errors import (
    ConstraintViolation,
    StaleTokenState,
    StorageUnavailable,
)
from tokenward.storage.models import (
    LoginAttempt,
    Role,
    Token,
    TokenKind,
    TokenStatus,
    User,
    UserStatus,
)

_TOKEN_COLUMNS = "t.id, t.value, t.kind, t.status, t.owner_id, t.issued_at, t.updated_at"


def _is_uuid(value: Any) -> bool:
    """True when ``value`` can be bound to a UUID column without a DataError."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed user, credential, token ledger, and login-attempt store.

    Ledger mutations for one owner are serialized by taking ``FOR UPDATE`` on
    the owner's ``app_user`` row at the start of the transaction, so a
    revoke-all and the insert of the replacement pair commit as one unit.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(str(exc), backend="postgres") from exc

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Fail fast when the tables or the ledger owner index are missing."""

        required_tables = [
            "app_user",
            "user_auth_credential",
            "auth_token",
            "login_attempt",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )
            owner_index = conn.execute(
                """
                SELECT i.relname AS index_name
                FROM pg_index idx
                JOIN pg_class i ON i.oid = idx.indexrelid
                JOIN pg_class t ON t.oid = idx.indrelid
                WHERE t.relname = 'auth_token' AND i.relname = 'auth_token_owner_status_idx'
                """
            ).fetchone()
            if not owner_index:
                raise RuntimeError(
                    "auth_token_owner_status_idx is missing. Apply scripts/schema.sql to index (owner_id, status)."
                )

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=Role(row.get("role") or Role.USER.value),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            firstname=row.get("firstname"),
            lastname=row.get("lastname"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _row_to_token(
        row: dict,
        *,
        owner_email: Optional[str] = None,
        owner_role: Optional[str] = None,
    ) -> Token:
        email = row.get("owner_email", owner_email)
        role = row.get("owner_role", owner_role)
        return Token(
            id=str(row["id"]),
            value=row["value"],
            kind=TokenKind(row["kind"]),
            status=TokenStatus(row["status"]),
            owner_id=str(row["owner_id"]),
            issued_at=row["issued_at"],
            updated_at=row.get("updated_at") or row["issued_at"],
            owner_email=email,
            owner_role=Role(role) if role else None,
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, status, firstname, lastname)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        Role(role).value,
                        UserStatus(status).value,
                        firstname,
                        lastname,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(
        self,
        user_id: str,
        *,
        firstname: Optional[str] = None,
        lastname: Optional[str] = None,
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET firstname = COALESCE(%s, firstname),
                    lastname = COALESCE(%s, lastname),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (firstname, lastname, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserStatus(status).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        # auth_token, login_attempt and user_auth_credential cascade
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("credential user missing", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # token ledger
    def _lock_owner(self, conn: psycopg.Connection, owner_id: str) -> dict:
        if not _is_uuid(owner_id):
            raise ConstraintViolation("token owner missing", {"owner_id": owner_id})
        owner = conn.execute(
            "SELECT id, email, role FROM app_user WHERE id = %s FOR UPDATE",
            (owner_id,),
        ).fetchone()
        if not owner:
            raise ConstraintViolation("token owner missing", {"owner_id": owner_id})
        return owner

    def _revoke_locked(
        self, conn: psycopg.Connection, owner: dict, keep: Optional[str] = None
    ) -> List[Token]:
        if keep is None:
            rows = conn.execute(
                f"""
                UPDATE auth_token t SET status = 'INACTIVE', updated_at = now()
                WHERE t.owner_id = %s AND t.status = 'ACTIVE'
                RETURNING {_TOKEN_COLUMNS}
                """,
                (owner["id"],),
            ).fetchall()
        else:
            rows = conn.execute(
                f"""
                UPDATE auth_token t SET status = 'INACTIVE', updated_at = now()
                WHERE t.owner_id = %s AND t.status = 'ACTIVE' AND t.value <> %s
                RETURNING {_TOKEN_COLUMNS}
                """,
                (owner["id"], keep),
            ).fetchall()
        return [
            self._row_to_token(row, owner_email=owner["email"], owner_role=owner["role"])
            for row in rows
        ]

    @staticmethod
    def _insert_token(conn: psycopg.Connection, token: Token) -> None:
        conn.execute(
            """
            INSERT INTO auth_token (id, value, kind, status, owner_id, issued_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.value,
                TokenKind(token.kind).value,
                TokenStatus(token.status).value,
                token.owner_id,
                token.issued_at,
                token.updated_at,
            ),
        )

    def save_token(self, token: Token) -> Token:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    owner = self._lock_owner(conn, token.owner_id)
                    existing = conn.execute(
                        f"SELECT {_TOKEN_COLUMNS} FROM auth_token t WHERE t.value = %s FOR UPDATE",
                        (token.value,),
                    ).fetchone()
                    if existing is None:
                        self._insert_token(conn, token)
                        row = None
                    else:
                        if (
                            str(existing["id"]) != token.id
                            or str(existing["owner_id"]) != token.owner_id
                            or existing["kind"] != TokenKind(token.kind).value
                        ):
                            raise ConstraintViolation(
                                "token identity is immutable", {"field": "value"}
                            )
                        if (
                            existing["status"] == TokenStatus.INACTIVE.value
                            and TokenStatus(token.status) == TokenStatus.ACTIVE
                        ):
                            raise ConstraintViolation(
                                "token cannot be reactivated", {"token_id": token.id}
                            )
                        row = conn.execute(
                            f"""
                            UPDATE auth_token t SET status = %s, updated_at = now()
                            WHERE t.value = %s
                            RETURNING {_TOKEN_COLUMNS}
                            """,
                            (TokenStatus(token.status).value, token.value),
                        ).fetchone()
        except errors.UniqueViolation:
            # id collision with a different value
            raise ConstraintViolation("token value is immutable", {"token_id": token.id})
        if row is None:
            return Token(
                id=token.id,
                value=token.value,
                kind=TokenKind(token.kind),
                status=TokenStatus(token.status),
                owner_id=token.owner_id,
                issued_at=token.issued_at,
                updated_at=token.updated_at,
                owner_email=owner["email"],
                owner_role=Role(owner["role"]),
            )
        return self._row_to_token(row, owner_email=owner["email"], owner_role=owner["role"])

    def find_token(self, value: str, kind: Optional[TokenKind] = None) -> Optional[Token]:
        query = (
            f"SELECT {_TOKEN_COLUMNS}, u.email AS owner_email, u.role AS owner_role "
            "FROM auth_token t JOIN app_user u ON u.id = t.owner_id WHERE t.value = %s"
        )
        params: tuple[Any, ...] = (value,)
        if kind is not None:
            query += " AND t.kind = %s"
            params = (value, TokenKind(kind).value)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_token(row) if row else None

    def find_active_tokens(self, owner_id: str) -> List[Token]:
        if not _is_uuid(owner_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TOKEN_COLUMNS}, u.email AS owner_email, u.role AS owner_role
                FROM auth_token t JOIN app_user u ON u.id = t.owner_id
                WHERE t.owner_id = %s AND t.status = 'ACTIVE'
                ORDER BY t.issued_at
                """,
                (owner_id,),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def list_tokens(self, owner_id: str) -> List[Token]:
        if not _is_uuid(owner_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TOKEN_COLUMNS}, u.email AS owner_email, u.role AS owner_role
                FROM auth_token t JOIN app_user u ON u.id = t.owner_id
                WHERE t.owner_id = %s
                ORDER BY t.issued_at
                """,
                (owner_id,),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def revoke_all_tokens(self, owner_id: str) -> List[Token]:
        if not _is_uuid(owner_id):
            return []
        with self._connect() as conn:
            with conn.transaction():
                owner = conn.execute(
                    "SELECT id, email, role FROM app_user WHERE id = %s FOR UPDATE",
                    (owner_id,),
                ).fetchone()
                if not owner:
                    return []
                return self._revoke_locked(conn, owner)

    def replace_active_tokens(
        self,
        owner_id: str,
        new_tokens: Sequence[Token],
        *,
        expect_active: Optional[str] = None,
        keep: Optional[str] = None,
    ) -> List[Token]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    owner = self._lock_owner(conn, owner_id)
                    if expect_active is not None:
                        current = conn.execute(
                            "SELECT status FROM auth_token WHERE value = %s AND owner_id = %s",
                            (expect_active, owner_id),
                        ).fetchone()
                        if not current or current["status"] != TokenStatus.ACTIVE.value:
                            raise StaleTokenState(
                                "token is no longer active", {"owner_id": owner_id}
                            )
                    revoked = self._revoke_locked(conn, owner, keep=keep)
                    for token in new_tokens:
                        if token.owner_id != owner_id:
                            raise ConstraintViolation(
                                "token owner mismatch", {"owner_id": owner_id}
                            )
                        self._insert_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("token value already exists", {"field": "value"})
        return revoked

    def deactivate_token(self, value: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_token t SET status = 'INACTIVE', updated_at = now()
                FROM app_user u
                WHERE t.value = %s AND t.status = 'ACTIVE' AND u.id = t.owner_id
                RETURNING {_TOKEN_COLUMNS}, u.email AS owner_email, u.role AS owner_role
                """,
                (value,),
            ).fetchone()
            if row is None:
                # Unknown, or already INACTIVE
                row = conn.execute(
                    f"""
                    SELECT {_TOKEN_COLUMNS}, u.email AS owner_email, u.role AS owner_role
                    FROM auth_token t JOIN app_user u ON u.id = t.owner_id
                    WHERE t.value = %s
                    """,
                    (value,),
                ).fetchone()
        return self._row_to_token(row) if row else None

    # login attempts
    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, user_id, ip_address, user_agent, successful, failure_reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.user_id,
                    attempt.ip_address,
                    attempt.user_agent,
                    attempt.successful,
                    attempt.failure_reason,
                    attempt.timestamp,
                ),
            )
        return attempt

    def count_failed_attempts_since(self, user_id: str, since: datetime) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS failures FROM login_attempt
                WHERE user_id = %s AND successful = FALSE AND created_at >= %s
                """,
                (user_id, since),
            ).fetchone()
        return int(row["failures"]) if row else 0

    def list_login_attempts(self, user_id: str, limit: int = 50) -> List[LoginAttempt]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempt WHERE user_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [
            LoginAttempt(
                id=str(row["id"]),
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                successful=bool(row["successful"]),
                timestamp=row["created_at"],
                failure_reason=row.get("failure_reason"),
            )
            for row in rows
        ]
