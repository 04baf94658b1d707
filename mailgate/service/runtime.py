from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from mailgate.config import Settings, StoreBackend
from mailgate.logging import get_logger
from mailgate.service.auth import AuthService
from mailgate.service.clock import Clock, SystemClock
from mailgate.service.email import EmailSender, build_email_sender
from mailgate.service.maintenance import SweepSupervisor
from mailgate.service.otp import OtpService, RandomSource
from mailgate.service.rate_limit import RateLimiter
from mailgate.service.tokens import TokenService
from mailgate.storage.memory import MemoryStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide credentials embedded in a connection URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> Any:
    backend = StoreBackend(settings.store_backend)
    if backend == StoreBackend.POSTGRES:
        from mailgate.storage.postgres import PostgresStore

        return PostgresStore(settings.database_url)
    return MemoryStore()


def build_rate_limit_store(settings: Settings, fallback: Any) -> Any:
    if not settings.redis_url:
        return fallback
    from mailgate.storage.redis_cache import RedisRateLimitStore

    try:
        cache = RedisRateLimitStore(settings.redis_url)
        cache.verify_connection()
        return cache
    except Exception as exc:
        if not settings.test_mode:
            raise RuntimeError(
                "Redis is configured for rate limits but unreachable; "
                "fix REDIS_URL or unset it to keep windows in the primary store."
            ) from exc
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(exc),
            mode="TEST_MODE",
        )
        return fallback


class Runtime:
    """Explicitly wired service graph; one instance per application."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Any = None,
        rate_limit_store: Any = None,
        email_sender: Optional[EmailSender] = None,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            store_backend=StoreBackend(settings.store_backend).value,
            test_mode=settings.test_mode,
        )
        try:
            self.store = store if store is not None else build_store(settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_backend=StoreBackend(settings.store_backend).value,
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.rate_limit_store = (
            rate_limit_store
            if rate_limit_store is not None
            else build_rate_limit_store(settings, self.store)
        )
        self.email_sender = email_sender or build_email_sender(settings)

        self.otp = OtpService(
            self.store, settings, clock=self.clock, random_source=random_source
        )
        self.rate_limiter = RateLimiter(self.rate_limit_store, clock=self.clock)
        self.tokens = TokenService(settings, clock=self.clock)
        self.auth = AuthService(
            self.store,
            self.otp,
            self.rate_limiter,
            self.tokens,
            self.email_sender,
            settings,
            clock=self.clock,
        )
        self.sweeper = SweepSupervisor(self.auth.run_sweeps, settings.sweep_interval_seconds)

    async def start(self) -> None:
        self.sweeper.start()

    async def close(self) -> None:
        await self.sweeper.stop()
        closers = [self.store]
        if self.rate_limit_store is not self.store:
            closers.append(self.rate_limit_store)
        for resource in closers:
            close = getattr(resource, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as exc:
                    logger.warning(
                        "runtime_close_failed",
                        resource=type(resource).__name__,
                        error=str(exc),
                    )
