from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from mailgate.logging import get_logger, mask_key
from mailgate.service.clock import Clock, SystemClock
from mailgate.service.errors import RateLimitedError
from mailgate.storage.models import RateLimitRecord

logger = get_logger(__name__)


class RateLimitStore(Protocol):
    def increment_rate_limit(
        self, key: str, window_seconds: int, now: datetime
    ) -> RateLimitRecord: ...

    def get_rate_limit(self, key: str, now: datetime) -> Optional[RateLimitRecord]: ...

    def delete_rate_limit(self, key: str) -> bool: ...

    def delete_expired_rate_limits(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int


@dataclass
class RateLimitState:
    key: str
    count: int
    limit: int
    reset_time: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def exceeded(self) -> bool:
        return self.count > self.limit

    def retry_after(self, now: datetime) -> int:
        return max(1, math.ceil((self.reset_time - now).total_seconds()))


class RateLimiter:
    """Fixed-window counters keyed by arbitrary strings (email, origin, ...)."""

    def __init__(self, store: RateLimitStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def increment(self, key: str, policy: RateLimitPolicy) -> RateLimitState:
        record = self.store.increment_rate_limit(
            key, policy.window_seconds, self.clock.now()
        )
        return RateLimitState(
            key=key, count=record.count, limit=policy.limit, reset_time=record.reset_time
        )

    def enforce(self, key: str, policy: RateLimitPolicy) -> RateLimitState:
        """Count one event against ``key``; raise once the window's limit is passed."""
        state = self.increment(key, policy)
        if state.exceeded:
            now = self.clock.now()
            retry_after = state.retry_after(now)
            logger.warning(
                "rate_limit_exceeded",
                key=mask_key(key),
                count=state.count,
                limit=state.limit,
                retry_after=retry_after,
            )
            raise RateLimitedError(
                "too many requests, try again later",
                detail={
                    "retry_after": retry_after,
                    "reset_time": state.reset_time.isoformat(),
                    "limit": state.limit,
                },
            )
        return state

    def reset(self, key: str) -> bool:
        removed = self.store.delete_rate_limit(key)
        logger.info("rate_limit_reset", key=mask_key(key), removed=removed)
        return removed

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_rate_limits(self.clock.now())
        if removed:
            logger.info("rate_limit_sweep_completed", removed=removed)
        return removed
