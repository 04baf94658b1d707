from __future__ import annotations

import asyncio
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from mailgate.config import Settings
from mailgate.logging import get_logger, mask_email, mask_ip, mask_token
from mailgate.service.clock import Clock, SystemClock
from mailgate.service.email import EmailSender, build_login_code_message
from mailgate.service.errors import (
    EmailSendError,
    OtpCooldownError,
    ServerError,
    TokenExpiredError,
    TokenInvalidError,
    UserNotFoundError,
)
from mailgate.service.otp import OtpService
from mailgate.service.rate_limit import RateLimitPolicy, RateLimiter
from mailgate.service.tokens import ACCESS, REFRESH, TokenPair, TokenService
from mailgate.storage.models import RefreshToken, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_or_create_user(self, email: str, now: datetime) -> User: ...

    def touch_last_login(self, user_id: str, now: datetime) -> Optional[User]: ...

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime, now: datetime
    ) -> RefreshToken: ...

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, old_token: str, user_id: str, new_token: str, expires_at: datetime, now: datetime
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", (email or "").strip().lower())


@dataclass
class AuthContext:
    user_id: str
    email: str
    token_id: Optional[str] = None


@dataclass
class RequestCodeResult:
    expires_in_minutes: int
    cooldown_seconds: int


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Passwordless login flows composed from the OTP, limiter, token and store services.

    Every store-backed call runs in a worker thread bounded by
    ``store_timeout_seconds``; a timeout surfaces as an internal error because
    the outcome of the underlying operation is unknown.
    """

    def __init__(
        self,
        store: AuthStore,
        otp: OtpService,
        rate_limiter: RateLimiter,
        tokens: TokenService,
        email_sender: EmailSender,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.otp = otp
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self.email_sender = email_sender
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = logger
        self.request_email_policy = RateLimitPolicy(
            settings.request_code_email_limit, settings.request_code_email_window_seconds
        )
        self.request_origin_policy = RateLimitPolicy(
            settings.request_code_origin_limit, settings.request_code_origin_window_seconds
        )
        self.verify_origin_policy = RateLimitPolicy(
            settings.verify_origin_limit, settings.verify_origin_window_seconds
        )
        self.verify_email_policy = RateLimitPolicy(
            settings.verify_email_limit, settings.verify_email_window_seconds
        )

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        timeout = self.settings.store_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
        except asyncio.TimeoutError:
            operation = getattr(func, "__name__", repr(func))
            self.logger.error("store_call_timeout", operation=operation, timeout=timeout)
            raise ServerError(
                "storage operation timed out", detail={"operation": operation}
            ) from None

    async def request_code(
        self, email: str, origin_key: Optional[str] = None
    ) -> RequestCodeResult:
        email = normalize_email(email)
        await self._call(
            self.rate_limiter.enforce, f"otp_request:email:{email}", self.request_email_policy
        )
        if origin_key:
            await self._call(
                self.rate_limiter.enforce,
                f"otp_request:origin:{origin_key}",
                self.request_origin_policy,
            )

        remaining = await self._call(self.otp.cooldown_remaining, email)
        if remaining:
            self.logger.info(
                "otp_cooldown_active", email=mask_email(email), retry_after=remaining
            )
            raise OtpCooldownError(
                f"please wait {remaining} seconds before requesting a new code",
                detail={"retry_after": remaining},
            )

        code = await self._call(self.otp.issue, email)
        message = build_login_code_message(
            code, self.settings.otp_ttl_minutes, self.settings.app_name
        )
        try:
            sent = await asyncio.to_thread(
                self.email_sender.send,
                email,
                message.subject,
                message.html_body,
                message.text_body,
            )
        except Exception as exc:
            self.logger.error(
                "otp_email_send_raised",
                email=mask_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            sent = False
        if not sent:
            raise EmailSendError("failed to send login code email")

        self.logger.info(
            "otp_requested",
            email=mask_email(email),
            origin=mask_ip(origin_key) if origin_key else None,
        )
        return RequestCodeResult(
            expires_in_minutes=self.settings.otp_ttl_minutes,
            cooldown_seconds=self.settings.otp_resend_cooldown_seconds,
        )

    async def verify_code_and_login(
        self, email: str, code: str, origin_key: Optional[str] = None
    ) -> LoginResult:
        email = normalize_email(email)
        # Throttle before the code is even looked at
        if origin_key:
            await self._call(
                self.rate_limiter.enforce,
                f"otp_verify:origin:{origin_key}",
                self.verify_origin_policy,
            )
        await self._call(
            self.rate_limiter.enforce, f"otp_verify:email:{email}", self.verify_email_policy
        )

        await self._call(self.otp.verify, email, (code or "").strip())

        now = self.clock.now()
        user = await self._call(self.store.get_or_create_user, email, now)
        user = await self._call(self.store.touch_last_login, user.id, now) or user
        tokens = self.tokens.issue_pair(user)
        await self._call(
            self.store.create_refresh_token,
            user.id,
            tokens.refresh_token,
            tokens.refresh_expires_at,
            now,
        )
        self.logger.info("login_succeeded", user_id=user.id, email=mask_email(email))
        return LoginResult(user=user, tokens=tokens)

    async def refresh_session(self, refresh_token: Optional[str]) -> TokenPair:
        if not refresh_token:
            raise TokenInvalidError("refresh token required")

        record = await self._call(self.store.find_refresh_token, refresh_token)
        if not record or record.is_revoked:
            self.logger.warning(
                "refresh_token_rejected",
                refresh=mask_token(refresh_token),
                reason="revoked" if record else "unknown",
            )
            raise TokenInvalidError("invalid refresh token")

        now = self.clock.now()
        if record.expires_at <= now:
            await self._call(self.store.revoke_refresh_token, refresh_token)
            self.logger.info("refresh_token_expired", user_id=record.user_id)
            raise TokenExpiredError("refresh token has expired")

        payload = self.tokens.verify(refresh_token, REFRESH)
        if payload.get("sub") != record.user_id:
            raise TokenInvalidError("invalid refresh token")

        user = await self._call(self.store.get_user, record.user_id)
        if not user:
            raise UserNotFoundError("user not found")

        pair = self.tokens.issue_pair(user)
        rotated = await self._call(
            self.store.rotate_refresh_token,
            refresh_token,
            user.id,
            pair.refresh_token,
            pair.refresh_expires_at,
            now,
        )
        if not rotated:
            # Another caller rotated this token first
            self.logger.warning("refresh_token_rotation_lost", user_id=user.id)
            raise TokenInvalidError("invalid refresh token")
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return pair

    async def logout(self, refresh_token: Optional[str] = None) -> None:
        if not refresh_token:
            return
        try:
            revoked = await self._call(self.store.revoke_refresh_token, refresh_token)
        except Exception as exc:
            self.logger.warning(
                "logout_revoke_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return
        self.logger.info("logout", revoked=revoked)

    async def logout_everywhere(self, user_id: str) -> int:
        user = await self._call(self.store.get_user, user_id)
        if not user:
            raise UserNotFoundError("user not found")
        revoked = await self._call(self.store.revoke_user_refresh_tokens, user_id)
        self.logger.info("logout_everywhere", user_id=user_id, revoked=revoked)
        return revoked

    async def get_profile(self, user_id: str) -> User:
        user = await self._call(self.store.get_user, user_id)
        if not user:
            raise UserNotFoundError("user not found")
        return user

    async def find_user_by_email(self, email: str) -> Optional[User]:
        return await self._call(self.store.get_user_by_email, normalize_email(email))

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a ``Bearer`` access token to its subject; no store lookup."""
        token = self._extract_bearer(authorization)
        if not token:
            raise TokenInvalidError("missing bearer token")
        payload = self.tokens.verify(token, ACCESS)
        return AuthContext(
            user_id=payload["sub"], email=payload.get("email", ""), token_id=payload.get("jti")
        )

    async def unblock(self, key: str) -> bool:
        return await self._call(self.rate_limiter.reset, key)

    async def run_sweeps(self) -> Dict[str, Optional[int]]:
        """Reclaim expired codes, rate-limit windows and refresh tokens.

        Each sweep is independent and best-effort: a failure is logged and
        reported as ``None`` without affecting the others.
        """
        sweeps: Dict[str, Callable[[], int]] = {
            "otp": self.otp.sweep_expired,
            "rate_limit": self.rate_limiter.sweep_expired,
            "refresh": lambda: self.store.delete_expired_refresh_tokens(self.clock.now()),
        }
        results: Dict[str, Optional[int]] = {}
        for name, sweep in sweeps.items():
            try:
                results[name] = await self._call(sweep)
            except Exception as exc:
                self.logger.warning(
                    "sweep_failed", sweep=name, error_type=type(exc).__name__, error=str(exc)
                )
                results[name] = None
        return results

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
