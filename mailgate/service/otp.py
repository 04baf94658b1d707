from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from mailgate.config import Settings
from mailgate.logging import get_logger, mask_email
from mailgate.service.clock import Clock, SystemClock
from mailgate.service.errors import (
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpInvalidError,
    OtpNotFoundError,
)
from mailgate.storage.models import OtpRecord

logger = get_logger(__name__)


class OtpStore(Protocol):
    def get_otp(self, email: str) -> Optional[OtpRecord]: ...

    def replace_otp(self, email, code_hash, expires_at, now) -> OtpRecord: ...

    def consume_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]: ...

    def mark_otp_used(self, otp_id: str) -> bool: ...

    def delete_otp(self, otp_id: str) -> bool: ...

    def delete_expired_otps(self, now) -> int: ...


class RandomSource(Protocol):
    def secure_digits(self, length: int) -> str: ...


class SecureRandomSource:
    """Digits drawn from the OS CSPRNG via :mod:`secrets`."""

    def secure_digits(self, length: int) -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(length))


class OtpService:
    """Issue, verify and reclaim hashed one-time login codes.

    Only the argon2id hash of a code is persisted. Issuing replaces any
    previous record for the email, which also resets its attempt counter.
    """

    def __init__(
        self,
        store: OtpStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.random_source = random_source or SecureRandomSource()
        self._hasher = PasswordHasher(
            time_cost=settings.otp_hash_time_cost,
            memory_cost=settings.otp_hash_memory_kib,
            parallelism=1,
            type=Type.ID,
        )

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.otp_ttl_minutes)

    def issue(self, email: str) -> str:
        code = self.random_source.secure_digits(self.settings.otp_length)
        now = self.clock.now()
        record = self.store.replace_otp(email, self._hasher.hash(code), now + self.ttl, now)
        logger.info(
            "otp_issued",
            email=mask_email(email),
            otp_id=record.id,
            expires_at=record.expires_at.isoformat(),
        )
        return code

    def verify(self, email: str, candidate: str) -> OtpRecord:
        record = self.store.get_otp(email)
        if not record:
            raise OtpNotFoundError("no login code was requested for this email")

        now = self.clock.now()
        if record.is_expired(now):
            self.store.delete_otp(record.id)
            logger.info("otp_expired", email=mask_email(email), otp_id=record.id)
            raise OtpExpiredError("login code has expired")

        if record.is_used:
            raise OtpInvalidError("invalid login code")

        max_attempts = self.settings.otp_max_verify_attempts
        if record.attempts >= max_attempts:
            self._exhaust(record)

        # Reserve the attempt before comparing so concurrent guesses cannot overrun the limit
        attempts = self.store.consume_otp_attempt(record.id, max_attempts)
        if attempts is None:
            current = self.store.get_otp(email)
            if not current or current.id != record.id or current.is_used:
                raise OtpInvalidError("invalid login code")
            self._exhaust(current)

        if not self._matches(record.code_hash, candidate):
            logger.warning(
                "otp_mismatch",
                email=mask_email(email),
                otp_id=record.id,
                attempts=attempts,
                max_attempts=max_attempts,
            )
            raise OtpInvalidError(
                "invalid login code",
                detail={"attempts_remaining": max(0, max_attempts - attempts)},
            )

        if not self.store.mark_otp_used(record.id):
            raise OtpInvalidError("invalid login code")
        logger.info("otp_verified", email=mask_email(email), otp_id=record.id)
        return record

    def cooldown_remaining(self, email: str) -> int:
        """Seconds until a new code may be issued for ``email`` (0 when allowed)."""
        record = self.store.get_otp(email)
        if not record or record.is_used:
            return 0
        cooldown = self.settings.otp_resend_cooldown_seconds
        elapsed = (self.clock.now() - record.created_at).total_seconds()
        if elapsed > cooldown:
            return 0
        return max(1, int(cooldown - elapsed))

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_otps(self.clock.now())
        if removed:
            logger.info("otp_sweep_completed", removed=removed)
        return removed

    def _exhaust(self, record: OtpRecord) -> None:
        self.store.delete_otp(record.id)
        logger.warning(
            "otp_attempts_exhausted", email=mask_email(record.email), otp_id=record.id
        )
        raise OtpAttemptsExceededError(
            "too many failed attempts; request a new login code"
        )

    def _matches(self, code_hash: str, candidate: str) -> bool:
        try:
            return self._hasher.verify(code_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.error("otp_hash_unverifiable")
            return False
