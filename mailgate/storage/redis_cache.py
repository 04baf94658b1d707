from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Optional

from redis import Redis

from mailgate.storage.models import RateLimitRecord


class RedisRateLimitStore:
    """Fixed-window rate-limit counters kept in Redis.

    Implements the rate-limit half of the store contract so the limiter can
    share windows across workers. Redis key expiry does the reclamation that
    the relational stores need a sweep for.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic fixed window: first hit (or a key that lost its TTL) opens the window
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
local ttl = redis.call('PTTL', key)
if count == 1 or ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Generate collision-resistant rate keys.

        The logical key is hashed to avoid delimiter injection while still
        providing a stable Redis key per rate limit subject.
        """

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    def increment_rate_limit(
        self, key: str, window_seconds: int, now: datetime
    ) -> RateLimitRecord:
        count, ttl_ms = self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[max(1, int(window_seconds * 1000))],
        )
        reset_time = now + timedelta(milliseconds=int(ttl_ms))
        return RateLimitRecord(
            id=str(uuid.uuid4()),
            key=key,
            count=int(count),
            reset_time=reset_time,
            created_at=now,
        )

    def get_rate_limit(self, key: str, now: datetime) -> Optional[RateLimitRecord]:
        safe_key = self._normalize_rate_key(key)
        pipe = self.client.pipeline()
        pipe.get(safe_key)
        pipe.pttl(safe_key)
        raw_count, ttl_ms = pipe.execute()
        if raw_count is None or int(ttl_ms) < 0:
            return None
        return RateLimitRecord(
            id=safe_key,
            key=key,
            count=int(raw_count),
            reset_time=now + timedelta(milliseconds=int(ttl_ms)),
            created_at=now,
        )

    def delete_rate_limit(self, key: str) -> bool:
        return bool(self.client.delete(self._normalize_rate_key(key)))

    def delete_expired_rate_limits(self, now: datetime) -> int:
        return 0
