from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from inkwell.logging import get_logger
from inkwell.storage.errors import ConstraintViolation, StorageUnavailable
from inkwell.storage.models import (
    ROLE_ADMIN,
    Account,
    ResetChallenge,
    ResetGrant,
    SessionRecord,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_account (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        display_name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('admin', 'user')),
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_account_username_key UNIQUE (username),
        CONSTRAINT app_account_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_bootstrap (
        singleton BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (singleton),
        user_id TEXT NOT NULL,
        claimed_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_refresh_session (
        refresh_token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_account (id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_refresh_session_user_idx ON auth_refresh_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_challenge (
        email TEXT PRIMARY KEY,
        otp_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_grant (
        token_hash TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

# Unique constraint name -> offending field
_CONSTRAINT_FIELDS = {
    "app_account_username_key": "username",
    "app_account_email_key": "email",
    "admin_bootstrap_pkey": "admin_bootstrap",
}


class PostgresStore:
    """Postgres-backed account, session, and reset-challenge store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(str(exc), backend="postgres") from exc

    def _ensure_schema(self) -> None:
        """Create the account, session, and reset tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        field = _CONSTRAINT_FIELDS.get(constraint, "unknown")
        message = (
            "admin already bootstrapped"
            if field == "admin_bootstrap"
            else f"{field} already exists"
        )
        return ConstraintViolation(message, {"field": field})

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            display_name=row.get("display_name") or "",
            password_hash=row.get("password_hash") or "",
            role=row.get("role", "user"),
            is_verified=bool(row.get("is_verified", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: dict) -> SessionRecord:
        return SessionRecord(
            refresh_token_hash=row["refresh_token_hash"],
            user_id=str(row["user_id"]),
            created_at=row.get("created_at") or utcnow(),
            expires_at=row["expires_at"],
        )

    @staticmethod
    def _row_to_challenge(row: dict) -> ResetChallenge:
        return ResetChallenge(
            email=row["email"],
            otp_hash=row["otp_hash"],
            expires_at=row["expires_at"],
            attempt_count=int(row.get("attempt_count") or 0),
            created_at=row.get("created_at") or utcnow(),
        )

    # accounts
    def exists_by_username(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_account WHERE username = %s", (username,)
            ).fetchone()
        return row is not None

    def exists_by_email(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_account WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS total FROM app_account").fetchone()
        return int(row["total"]) if row else 0

    def create_user(
        self,
        username: str,
        email: str,
        display_name: str,
        password_hash: str,
        *,
        role: str = "user",
    ) -> Account:
        account = Account.new(username, email, display_name, password_hash, role=role)
        try:
            with self._connect() as conn:
                # Sentinel claim and account insert commit or roll back together
                if role == ROLE_ADMIN:
                    conn.execute(
                        "INSERT INTO admin_bootstrap (singleton, user_id) VALUES (TRUE, %s)",
                        (account.id,),
                    )
                conn.execute(
                    """
                    INSERT INTO app_account (id, username, email, display_name, password_hash, role, is_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.username,
                        account.email,
                        account.display_name,
                        account.password_hash,
                        account.role,
                        account.is_verified,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return account

    def get_user_by_login(self, login: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_account WHERE username = %s OR email = %s LIMIT 1",
                (login, login.strip().lower()),
            ).fetchone()
        if not row:
            return None
        return self._row_to_account(row)

    def get_user(self, user_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_account WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_account(row)

    def update_password_by_email(
        self, email: str, password_hash: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account SET password_hash = %s, updated_at = now()
                WHERE email = %s
                RETURNING *
                """,
                (password_hash, email),
            ).fetchone()
        if not row:
            return None
        return self._row_to_account(row)

    def update_user_role(self, user_id: str, role: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_account SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_account(row)

    # sessions
    def store_token(self, record: SessionRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_refresh_session (refresh_token_hash, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        record.refresh_token_hash,
                        record.user_id,
                        record.created_at,
                        record.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"user_id": record.user_id}
            ) from exc

    def find_by_refresh_token(self, refresh_token_hash: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_refresh_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def delete_by_refresh_token(self, refresh_token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_refresh_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            )
            return result.rowcount > 0

    def delete_tokens_by_user_id(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_refresh_session WHERE user_id = %s", (user_id,)
            )
            return max(result.rowcount, 0)

    def replace_session(self, old_hash: str, new_record: SessionRecord) -> bool:
        """Retire ``old_hash`` and insert ``new_record`` in a single statement.

        A concurrent rotation of the same token blocks on the row lock, then
        deletes nothing and therefore inserts nothing.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH retired AS (
                    DELETE FROM auth_refresh_session
                    WHERE refresh_token_hash = %s
                    RETURNING user_id
                )
                INSERT INTO auth_refresh_session (refresh_token_hash, user_id, created_at, expires_at)
                SELECT %s, %s, %s, %s FROM retired
                RETURNING refresh_token_hash
                """,
                (
                    old_hash,
                    new_record.refresh_token_hash,
                    new_record.user_id,
                    new_record.created_at,
                    new_record.expires_at,
                ),
            ).fetchone()
        return row is not None

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_refresh_session WHERE expires_at <= %s",
                (now or utcnow(),),
            )
            return max(result.rowcount, 0)

    # password reset
    def store_reset_request(self, challenge: ResetChallenge) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_challenge (email, otp_hash, expires_at, attempt_count, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET otp_hash = EXCLUDED.otp_hash,
                    expires_at = EXCLUDED.expires_at,
                    attempt_count = EXCLUDED.attempt_count,
                    created_at = EXCLUDED.created_at
                """,
                (
                    challenge.email,
                    challenge.otp_hash,
                    challenge.expires_at,
                    challenge.attempt_count,
                    challenge.created_at,
                ),
            )

    def get_reset_request(self, email: str) -> Optional[ResetChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_challenge WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_challenge(row)

    def delete_reset_request(self, email: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_challenge WHERE email = %s", (email,)
            )
            return result.rowcount > 0

    def increment_attempt_count(self, email: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_challenge SET attempt_count = attempt_count + 1
                WHERE email = %s
                RETURNING attempt_count
                """,
                (email,),
            ).fetchone()
        if not row:
            return None
        return int(row["attempt_count"])

    def store_reset_grant(self, grant: ResetGrant) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_grant (token_hash, email, expires_at, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (grant.token_hash, grant.email, grant.expires_at, grant.created_at),
            )

    def consume_reset_grant(self, token_hash: str) -> Optional[ResetGrant]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM password_reset_grant WHERE token_hash = %s RETURNING *",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return ResetGrant(
            token_hash=row["token_hash"],
            email=row["email"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    def purge_expired_reset_requests(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._connect() as conn:
            challenges = conn.execute(
                "DELETE FROM password_reset_challenge WHERE expires_at < %s", (cutoff,)
            )
            grants = conn.execute(
                "DELETE FROM password_reset_grant WHERE expires_at < %s", (cutoff,)
            )
            return max(challenges.rowcount, 0) + max(grants.rowcount, 0)
