from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from mailgate.config import Settings, parse_duration
from mailgate.logging import get_logger
from mailgate.service.clock import Clock, SystemClock
from mailgate.service.errors import TokenExpiredError, TokenInvalidError
from mailgate.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class TokenService:
    """Self-contained HS256 JWTs for access and refresh credentials.

    Access tokens are validated without any store lookup; refresh tokens are
    additionally cross-checked against the refresh token store by the caller.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        self._secret = settings.jwt_secret.encode()
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    parse_duration = staticmethod(parse_duration)

    def expires_at(self, duration: str, now: Optional[datetime] = None) -> datetime:
        return (now or self.clock.now()) + parse_duration(duration)

    def issue_access_token(self, user: User) -> str:
        token, _ = self._issue(user, ACCESS, self.settings.jwt_access_expires_in)
        return token

    def issue_refresh_token(self, user: User) -> str:
        token, _ = self._issue(user, REFRESH, self.settings.jwt_refresh_expires_in)
        return token

    def issue_pair(self, user: User) -> TokenPair:
        access, access_exp = self._issue(user, ACCESS, self.settings.jwt_access_expires_in)
        refresh, refresh_exp = self._issue(
            user, REFRESH, self.settings.jwt_refresh_expires_in
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(self, token: str, expected_type: str) -> dict[str, Any]:
        payload = self._decode_jwt(token)
        if payload is None:
            raise TokenInvalidError("invalid token")
        if payload.get("token_type") != expected_type:
            logger.warning(
                "jwt_type_mismatch", expected=expected_type, got=payload.get("token_type")
            )
            raise TokenInvalidError("invalid token")
        if not payload.get("sub"):
            raise TokenInvalidError("invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("invalid token")
        if exp_ts <= (self.clock.now() - self._leeway).timestamp():
            raise TokenExpiredError("token has expired")
        return payload

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Best-effort payload decode without signature checks; diagnostics only."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, AttributeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _issue(self, user: User, token_type: str, duration: str) -> tuple[str, datetime]:
        now = self.clock.now()
        expires = self.expires_at(duration, now)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
        }
        return self._encode_jwt(payload), datetime.fromtimestamp(
            payload["exp"], tz=timezone.utc
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Validate structure, algorithm, signature, issuer and audience.

        Expiry is left to the caller so it can be reported separately.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload
