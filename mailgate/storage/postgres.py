from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from mailgate.logging import get_logger, mask_email
from mailgate.storage.errors import ConstraintViolation
from mailgate.storage.models import OtpRecord, RateLimitRecord, RefreshToken, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        code_hash TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        expires_at TIMESTAMPTZ NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS rate_limit (
        id TEXT PRIMARY KEY,
        key TEXT NOT NULL UNIQUE,
        count INTEGER NOT NULL,
        reset_time TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)


class PostgresStore:
    """Postgres-backed store; atomicity comes from single-statement SQL."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            created_at=row["created_at"],
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _otp_from_row(row: dict[str, Any]) -> OtpRecord:
        return OtpRecord(
            id=row["id"],
            email=row["email"],
            code_hash=row["code_hash"],
            attempts=row["attempts"],
            expires_at=row["expires_at"],
            is_used=row["is_used"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _refresh_from_row(row: dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            user_id=row["user_id"],
            token=row["token"],
            expires_at=row["expires_at"],
            is_revoked=row["is_revoked"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _rate_from_row(row: dict[str, Any]) -> RateLimitRecord:
        return RateLimitRecord(
            id=row["id"],
            key=row["key"],
            count=row["count"],
            reset_time=row["reset_time"],
            created_at=row["created_at"],
        )

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_or_create_user(self, email: str, now: datetime) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO app_user (id, email, created_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (email) DO NOTHING
                RETURNING *
                """,
                (str(uuid.uuid4()), email, now),
            ).fetchone()
            if row:
                self.logger.info("user_created", user_id=row["id"], email=mask_email(email))
            else:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE email = %s", (email,)
                ).fetchone()
        if not row:
            raise ConstraintViolation("user vanished during create", {"field": "email"})
        return self._user_from_row(row)

    def touch_last_login(self, user_id: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s RETURNING *",
                (now, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # one-time codes
    def get_otp(self, email: str) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM otp_code WHERE email = %s", (email,)).fetchone()
        return self._otp_from_row(row) if row else None

    def replace_otp(
        self, email: str, code_hash: str, expires_at: datetime, now: datetime
    ) -> OtpRecord:
        # A fresh id per issue means stale attempt/use updates never hit the new code
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO otp_code (id, email, code_hash, attempts, expires_at, is_used, created_at)
                VALUES (%s, %s, %s, 0, %s, FALSE, %s)
                ON CONFLICT (email) DO UPDATE SET
                    id = EXCLUDED.id,
                    code_hash = EXCLUDED.code_hash,
                    attempts = 0,
                    expires_at = EXCLUDED.expires_at,
                    is_used = FALSE,
                    created_at = EXCLUDED.created_at
                RETURNING *
                """,
                (str(uuid.uuid4()), email, code_hash, expires_at, now),
            ).fetchone()
        return self._otp_from_row(row)

    def consume_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_code SET attempts = attempts + 1
                WHERE id = %s AND is_used = FALSE AND attempts < %s
                RETURNING attempts
                """,
                (otp_id, max_attempts),
            ).fetchone()
        return row["attempts"] if row else None

    def mark_otp_used(self, otp_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_code SET is_used = TRUE WHERE id = %s AND is_used = FALSE RETURNING id",
                (otp_id,),
            ).fetchone()
        return row is not None

    def delete_otp(self, otp_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM otp_code WHERE id = %s", (otp_id,))
        return cur.rowcount > 0

    def delete_expired_otps(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM otp_code WHERE expires_at < %s", (now,))
        return cur.rowcount

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime, now: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = self._insert_refresh_token(conn, user_id, token, expires_at, now)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._refresh_from_row(row)

    @staticmethod
    def _insert_refresh_token(
        conn, user_id: str, token: str, expires_at: datetime, now: datetime
    ) -> dict[str, Any]:
        return conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token, expires_at, is_revoked, created_at)
            VALUES (%s, %s, %s, %s, FALSE, %s)
            RETURNING *
            """,
            (str(uuid.uuid4()), user_id, token, expires_at, now),
        ).fetchone()

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        old_token: str,
        user_id: str,
        new_token: str,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[RefreshToken]:
        try:
            with self._connect() as conn:
                revoked = conn.execute(
                    """
                    UPDATE refresh_token SET is_revoked = TRUE
                    WHERE token = %s AND is_revoked = FALSE
                    RETURNING id
                    """,
                    (old_token,),
                ).fetchone()
                if not revoked:
                    return None
                row = self._insert_refresh_token(conn, user_id, new_token, expires_at, now)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._refresh_from_row(row)

    def revoke_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE WHERE token = %s AND is_revoked = FALSE",
                (token,),
            )
        return cur.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE WHERE user_id = %s AND is_revoked = FALSE",
                (user_id,),
            )
        return cur.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
        return cur.rowcount

    # rate limits
    def increment_rate_limit(
        self, key: str, window_seconds: int, now: datetime
    ) -> RateLimitRecord:
        reset_time = now + timedelta(seconds=window_seconds)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO rate_limit (id, key, count, reset_time, created_at)
                VALUES (%s, %s, 1, %s, %s)
                ON CONFLICT (key) DO UPDATE SET
                    count = CASE WHEN rate_limit.reset_time <= %s THEN 1
                                 ELSE rate_limit.count + 1 END,
                    reset_time = CASE WHEN rate_limit.reset_time <= %s THEN EXCLUDED.reset_time
                                      ELSE rate_limit.reset_time END,
                    created_at = CASE WHEN rate_limit.reset_time <= %s THEN EXCLUDED.created_at
                                      ELSE rate_limit.created_at END
                RETURNING *
                """,
                (str(uuid.uuid4()), key, reset_time, now, now, now, now),
            ).fetchone()
        return self._rate_from_row(row)

    def get_rate_limit(self, key: str, now: datetime) -> Optional[RateLimitRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM rate_limit WHERE key = %s AND reset_time > %s", (key, now)
            ).fetchone()
        return self._rate_from_row(row) if row else None

    def delete_rate_limit(self, key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM rate_limit WHERE key = %s", (key,))
        return cur.rowcount > 0

    def delete_expired_rate_limits(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM rate_limit WHERE reset_time <= %s", (now,))
        return cur.rowcount
