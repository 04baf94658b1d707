from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional

from mailgate.logging import get_logger, mask_email
from mailgate.storage.errors import ConstraintViolation
from mailgate.storage.models import OtpRecord, RateLimitRecord, RefreshToken, User


class MemoryStore:
    """In-memory backing store for local development and tests.

    Every compound operation runs under one re-entrant lock, so the atomic
    contracts (upsert-by-email, increment-and-fetch, compare-and-mark-used,
    rotate) hold when request handlers call in from worker threads.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._users_by_email: Dict[str, str] = {}
        self.otps: Dict[str, OtpRecord] = {}  # email -> record
        self.refresh_tokens: Dict[str, RefreshToken] = {}  # token -> record
        self.rate_limits: Dict[str, RateLimitRecord] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._users_by_email.get(email)
            return self.users.get(user_id) if user_id else None

    def get_or_create_user(self, email: str, now: datetime) -> User:
        with self._data_lock:
            existing = self.get_user_by_email(email)
            if existing:
                return existing
            user = User(id=str(uuid.uuid4()), email=email, created_at=now)
            self.users[user.id] = user
            self._users_by_email[email] = user.id
            self.logger.info("user_created", user_id=user.id, email=mask_email(email))
            return user

    def touch_last_login(self, user_id: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_login_at = now
            return user

    # one-time codes
    def get_otp(self, email: str) -> Optional[OtpRecord]:
        with self._data_lock:
            return self.otps.get(email)

    def replace_otp(
        self, email: str, code_hash: str, expires_at: datetime, now: datetime
    ) -> OtpRecord:
        record = OtpRecord(
            id=str(uuid.uuid4()),
            email=email,
            code_hash=code_hash,
            expires_at=expires_at,
            created_at=now,
        )
        with self._data_lock:
            self.otps[email] = record
        return record

    def consume_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        with self._data_lock:
            record = self._otp_by_id(otp_id)
            if not record or record.is_used or record.attempts >= max_attempts:
                return None
            record.attempts += 1
            return record.attempts

    def mark_otp_used(self, otp_id: str) -> bool:
        with self._data_lock:
            record = self._otp_by_id(otp_id)
            if not record or record.is_used:
                return False
            record.is_used = True
            return True

    def delete_otp(self, otp_id: str) -> bool:
        with self._data_lock:
            record = self._otp_by_id(otp_id)
            if not record:
                return False
            del self.otps[record.email]
            return True

    def delete_expired_otps(self, now: datetime) -> int:
        with self._data_lock:
            expired = [email for email, rec in self.otps.items() if rec.is_expired(now)]
            for email in expired:
                del self.otps[email]
            return len(expired)

    def _otp_by_id(self, otp_id: str) -> Optional[OtpRecord]:
        for record in self.otps.values():
            if record.id == otp_id:
                return record
        return None

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime, now: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token=token,
                expires_at=expires_at,
                created_at=now,
            )
            self.refresh_tokens[token] = record
            return record

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def rotate_refresh_token(
        self,
        old_token: str,
        user_id: str,
        new_token: str,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            current = self.refresh_tokens.get(old_token)
            if not current or current.is_revoked:
                return None
            current.is_revoked = True
            return self.create_refresh_token(user_id, new_token, expires_at, now)

    def revoke_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.is_revoked:
                return False
            record.is_revoked = True
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    revoked += 1
            return revoked

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [t for t, rec in self.refresh_tokens.items() if rec.expires_at <= now]
            for token in expired:
                del self.refresh_tokens[token]
            return len(expired)

    # rate limits
    def increment_rate_limit(
        self, key: str, window_seconds: int, now: datetime
    ) -> RateLimitRecord:
        with self._data_lock:
            record = self.rate_limits.get(key)
            if record is None or record.is_expired(now):
                record = RateLimitRecord(
                    id=str(uuid.uuid4()),
                    key=key,
                    count=1,
                    reset_time=now + timedelta(seconds=window_seconds),
                    created_at=now,
                )
                self.rate_limits[key] = record
            else:
                record.count += 1
            return RateLimitRecord(**vars(record))

    def get_rate_limit(self, key: str, now: datetime) -> Optional[RateLimitRecord]:
        with self._data_lock:
            record = self.rate_limits.get(key)
            if record is None or record.is_expired(now):
                return None
            return RateLimitRecord(**vars(record))

    def delete_rate_limit(self, key: str) -> bool:
        with self._data_lock:
            return self.rate_limits.pop(key, None) is not None

    def delete_expired_rate_limits(self, now: datetime) -> int:
        with self._data_lock:
            expired = [k for k, rec in self.rate_limits.items() if rec.is_expired(now)]
            for key in expired:
                del self.rate_limits[key]
            return len(expired)
