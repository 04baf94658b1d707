from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class User:
    id: str
    email: str
    created_at: datetime
    last_login_at: Optional[datetime] = None


@dataclass
class OtpRecord:
    """Hashed one-time code; at most one exists per email."""

    id: str
    email: str
    code_hash: str
    expires_at: datetime
    created_at: datetime
    attempts: int = 0
    is_used: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime
    is_revoked: bool = False


@dataclass
class RateLimitRecord:
    """Fixed-window counter; logically absent once ``now >= reset_time``."""

    id: str
    key: str
    count: int
    reset_time: datetime
    created_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.reset_time
