from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from archauth.logging import get_logger
from archauth.storage.errors import ConstraintViolation, StoreUnavailable
from archauth.storage.models import (
    PASSWORD_RESET,
    SINGLE_USE_TOKEN_KINDS,
    USER_ROLES,
    OAuthAccount,
    Session,
    SingleUseToken,
    User,
)

_USER_COLUMNS = (
    "id, email, full_name, password_hash, avatar_url, email_verified, role, created_at, updated_at"
)
_SESSION_COLUMNS = "id, user_id, refresh_token_hash, expires_at, created_at, last_used_at"
_TOKEN_COLUMNS = "token, kind, user_id, expires_at, created_at"
_UPDATABLE_USER_FIELDS = ("full_name", "avatar_url", "role", "email_verified", "password_hash")

REQUIRED_TABLES = ("app_user", "auth_session", "auth_single_use_token", "oauth_account")


def _is_uuid(value: Any) -> bool:
    """Ids bound for UUID columns; anything else can never match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed user, session and single-use token store.

    Every public method is one short transaction taken from the pool; the
    compound writes (``create_user`` with an OAuth link, ``sync_oauth_account``,
    ``reset_password``, ``replace_password``) run their statements inside a
    single ``conn.transaction()``. Ids that cannot be UUIDs match no row and
    are never sent to the server.
    """

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.connect_timeout = statement_timeout_seconds
        timeout_ms = int(statement_timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={timeout_ms}",
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_exhausted", error=str(exc))
            raise StoreUnavailable("database connection pool exhausted") from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_operational_error", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _verify_required_schema(self) -> None:
        """Fail at startup rather than on the first login if tables are missing."""

        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply schema/001_auth.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row["full_name"],
            password_hash=row.get("password_hash"),
            avatar_url=row.get("avatar_url"),
            email_verified=bool(row.get("email_verified")),
            role=row.get("role") or "user",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
        )

    @staticmethod
    def _row_to_token(row: dict) -> SingleUseToken:
        return SingleUseToken(
            token=row["token"],
            kind=row["kind"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        full_name: str,
        password_hash: Optional[str] = None,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
        role: str = "user",
        oauth_account: Optional[OAuthAccount] = None,
    ) -> User:
        if role not in USER_ROLES:
            raise ValueError(f"unknown role: {role}")
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, email, full_name, password_hash, avatar_url, email_verified, role)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (user_id, email, full_name, password_hash, avatar_url, email_verified, role),
                ).fetchone()
                if oauth_account is not None:
                    self._upsert_oauth_account(conn, user_id, oauth_account)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_USER_FIELDS)
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if "role" in fields and fields["role"] not in USER_ROLES:
            raise ValueError(f"unknown role: {fields['role']}")
        if not fields or not _is_uuid(user_id):
            return self.get_user(user_id)
        # Column names come from the fixed whitelist above, never from callers.
        columns = [name for name in _UPDATABLE_USER_FIELDS if name in fields]
        assignments = ", ".join(f"{name} = %s" for name in columns)
        params = [fields[name] for name in columns] + [user_id]
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET {assignments}, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                params,
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self.update_user(user_id, email_verified=True)

    def _upsert_oauth_account(self, conn, user_id: str, account: OAuthAccount) -> None:
        conn.execute(
            """
            INSERT INTO oauth_account (
                user_id, provider, provider_account_id, access_token, refresh_token,
                expires_at, token_type, scope, id_token
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (provider, provider_account_id) DO UPDATE SET
                user_id = EXCLUDED.user_id,
                access_token = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token, oauth_account.refresh_token),
                expires_at = EXCLUDED.expires_at,
                token_type = EXCLUDED.token_type,
                scope = EXCLUDED.scope,
                id_token = EXCLUDED.id_token,
                updated_at = now()
            """,
            (
                user_id,
                account.provider,
                account.provider_account_id,
                account.access_token,
                account.refresh_token,
                account.expires_at,
                account.token_type,
                account.scope,
                account.id_token,
            ),
        )

    def link_oauth_account(self, account: OAuthAccount) -> OAuthAccount:
        if not _is_uuid(account.user_id):
            raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
        try:
            with self._connect() as conn:
                self._upsert_oauth_account(conn, account.user_id, account)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
        return account

    def sync_oauth_account(
        self, account: OAuthAccount, *, avatar_url: Optional[str] = None
    ) -> User:
        """Link ``account`` and optionally refresh the avatar in one transaction."""
        if not _is_uuid(account.user_id):
            raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
        try:
            with self._connect() as conn, conn.transaction():
                self._upsert_oauth_account(conn, account.user_id, account)
                if avatar_url:
                    row = conn.execute(
                        f"""
                        UPDATE app_user SET avatar_url = %s, updated_at = now()
                        WHERE id = %s
                        RETURNING {_USER_COLUMNS}
                        """,
                        (avatar_url, account.user_id),
                    ).fetchone()
                else:
                    row = conn.execute(
                        f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s",
                        (account.user_id,),
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
        if not row:
            raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
        return self._row_to_user(row)

    def get_oauth_account(self, provider: str, provider_account_id: str) -> Optional[OAuthAccount]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, provider, provider_account_id, access_token, refresh_token,
                       expires_at, token_type, scope, id_token, created_at, updated_at
                FROM oauth_account WHERE provider = %s AND provider_account_id = %s
                """,
                (provider, provider_account_id),
            ).fetchone()
        if not row:
            return None
        return OAuthAccount(**{**row, "user_id": str(row["user_id"])})

    # sessions
    def create_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        *,
        session_id: Optional[str] = None,
    ) -> Session:
        sid = session_id or str(uuid.uuid4())
        if not _is_uuid(user_id):
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        if not _is_uuid(sid):
            raise ValueError(f"session id must be a UUID: {sid!r}")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO auth_session (id, user_id, refresh_token_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (sid, user_id, refresh_token_hash, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": sid})
        return self._row_to_session(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_refresh_token_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE refresh_token_hash = %s AND expires_at > now()
                """,
                (refresh_token_hash,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def touch_session(self, session_id: str) -> None:
        if not _is_uuid(session_id):
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_used_at = now() WHERE id = %s", (session_id,)
            )

    def delete_session(self, session_id: str) -> None:
        if not _is_uuid(session_id):
            return
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def delete_user_sessions(self, user_id: str) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount or 0

    def purge_expired_sessions(self) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= now()")
            return cur.rowcount or 0

    # single-use tokens
    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in SINGLE_USE_TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")

    def create_single_use_token(
        self, kind: str, user_id: str, token: str, expires_at: datetime
    ) -> SingleUseToken:
        self._check_kind(kind)
        if not _is_uuid(user_id):
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO auth_single_use_token (token, kind, user_id, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (token, kind, user_id, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"kind": kind})
        return self._row_to_token(row)

    def get_single_use_token(self, kind: str, token: str) -> Optional[SingleUseToken]:
        self._check_kind(kind)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_TOKEN_COLUMNS} FROM auth_single_use_token
                WHERE kind = %s AND token = %s AND expires_at > now()
                """,
                (kind, token),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def consume_single_use_token(self, kind: str, token: str) -> Optional[SingleUseToken]:
        self._check_kind(kind)
        with self._connect() as conn:
            row = self._consume(conn, kind, token)
        return self._row_to_token(row) if row else None

    @staticmethod
    def _consume(conn, kind: str, token: str) -> Optional[dict]:
        # The delete and the expiry check are one statement, so two concurrent
        # consumers cannot both receive the row, and an expired row is removed
        # without being returned.
        return conn.execute(
            f"""
            WITH consumed AS (
                DELETE FROM auth_single_use_token
                WHERE kind = %s AND token = %s
                RETURNING {_TOKEN_COLUMNS}
            )
            SELECT {_TOKEN_COLUMNS} FROM consumed WHERE expires_at > now()
            """,
            (kind, token),
        ).fetchone()

    def delete_single_use_token(self, kind: str, token: str) -> None:
        self._check_kind(kind)
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM auth_single_use_token WHERE kind = %s AND token = %s",
                (kind, token),
            )

    def delete_user_single_use_tokens(self, kind: str, user_id: str) -> int:
        self._check_kind(kind)
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_single_use_token WHERE kind = %s AND user_id = %s",
                (kind, user_id),
            )
            return cur.rowcount or 0

    def purge_expired_single_use_tokens(self) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_single_use_token WHERE expires_at <= now()")
            return cur.rowcount or 0

    # compound writes
    def reset_password(self, token: str, password_hash: str) -> Optional[User]:
        with self._connect() as conn, conn.transaction():
            consumed = self._consume(conn, PASSWORD_RESET, token)
            if consumed is None:
                return None
            row = conn.execute(
                f"""
                UPDATE app_user SET password_hash = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (password_hash, consumed["user_id"]),
            ).fetchone()
            if not row:
                return None
            conn.execute("DELETE FROM auth_session WHERE user_id = %s", (consumed["user_id"],))
        return self._row_to_user(row)

    def replace_password(self, user_id: str, password_hash: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"""
                UPDATE app_user SET password_hash = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (password_hash, user_id),
            ).fetchone()
            if not row:
                return None
            conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
        return self._row_to_user(row)
