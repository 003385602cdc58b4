"""
Usage guard composition root.

Wires the quota store, rate limiter, circuit breaker, completion provider and
retention sweeper from ``Settings``. One ``UsageGuard`` per process.
"""

import logging
from typing import Any, Dict, Optional, Union

from usage_guard.config.loader import Settings
from usage_guard.sdk.openai_provider import CompletionProvider, OpenAICompletionProvider
from usage_guard.storage.cache import UsageCache
from usage_guard.storage.models import FeatureType, UsageDetail
from usage_guard.storage.repository import SQLiteUsageRepository, UsageRepository
from .accountant import ConsumeResult, UsageAccountant
from .circuit_breaker import BreakerRegistry
from .quota import QuotaStore, UsageInfo, UsageStatistics
from .rate_limiter import RateLimiter
from .sweeper import RetentionSweeper, SweepReport

logger = logging.getLogger(__name__)

PROVIDER_BREAKER_NAME = "openai"


class UsageGuard:
    """Owns every usage accounting component for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        repository: Optional[UsageRepository] = None,
        provider: Optional[CompletionProvider] = None,
        clock=None,
        sweeper_wait=None,
    ):
        """Build all components.

        Args:
            settings: Validated settings (defaults if omitted)
            repository: Durable store; SQLite at ``settings.database.path`` if omitted
            provider: Completion provider; OpenAI from ``settings.provider`` if omitted
            clock: Shared clock for every time-dependent component
            sweeper_wait: Wait function handed to the retention sweeper
        """
        self.settings = settings or Settings()
        db = self.settings.database
        quota = self.settings.quota
        breaker = self.settings.circuit_breaker

        self.repository = repository or SQLiteUsageRepository(db.path, timeout=db.timeout)
        self.quota_store = QuotaStore(
            self.repository,
            free_daily_limit=quota.free_daily_limit,
            cache=UsageCache(ttl_seconds=quota.cache_ttl_seconds, clock=clock),
            timezone=quota.timezone,
            retention_days=self.settings.retention.days,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(
            free_tier=self.settings.rate_limit.free,
            premium_tier=self.settings.rate_limit.premium,
            clock=clock,
        )
        self.breakers = BreakerRegistry(
            clock=clock,
            failure_threshold=breaker.failure_threshold,
            reset_timeout=breaker.reset_timeout,
            success_threshold=breaker.success_threshold,
            half_open_max_calls=breaker.half_open_max_calls,
        )
        if provider is None:
            p = self.settings.provider
            provider = OpenAICompletionProvider(
                model=p.model, max_tokens=p.max_tokens, temperature=p.temperature, timeout=p.timeout
            )
        self.accountant = UsageAccountant(
            self.quota_store,
            self.rate_limiter,
            self.breakers.get(PROVIDER_BREAKER_NAME),
            provider,
        )
        self.sweeper = RetentionSweeper(
            self.quota_store, rate_limiter=self.rate_limiter, clock=clock, wait=sweeper_wait
        )

    def start(self, run_sweeper: bool = True) -> bool:
        """Initialize the durable store and start the retention sweeper.

        Returns:
            True if the durable store is reachable; the guard still runs in
            degraded mode otherwise
        """
        available = self.quota_store.init()
        if run_sweeper:
            self.sweeper.start()
        logger.info("Usage guard started (durable store %s)", "available" if available else "unavailable")
        return available

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        self.sweeper.stop(timeout)
        logger.info("Usage guard stopped")

    def __enter__(self) -> "UsageGuard":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def consume(
        self,
        identity: str,
        feature_type: Union[str, FeatureType],
        is_premium: bool,
        request: Any,
        detail: Optional[UsageDetail] = None,
    ) -> ConsumeResult:
        return self.accountant.consume(identity, feature_type, is_premium, request, detail)

    def get_usage(self, identity: str, is_premium: bool = False) -> UsageInfo:
        return self.accountant.get_usage(identity, is_premium)

    def check_limit(self, identity: str, is_premium: bool = False) -> bool:
        return self.accountant.check_limit(identity, is_premium)

    def get_statistics(self, identity: str, days: int = 7) -> UsageStatistics:
        return self.accountant.get_statistics(identity, days)

    def clear_cache(self) -> None:
        """Drop cached counters so the next reads go to the durable store."""
        self.quota_store.clear_cache()

    def sweep(self) -> SweepReport:
        return self.sweeper.run_once()

    def health(self) -> Dict[str, Any]:
        """Store availability and breaker state for status endpoints."""
        snapshot = self.accountant.breaker_state()
        return {
            "store_available": self.quota_store.is_available(),
            "breaker": {
                "name": snapshot.name,
                "state": snapshot.state.value,
                "consecutive_failures": snapshot.consecutive_failures,
                "next_retry_at": snapshot.next_retry_at.isoformat() if snapshot.next_retry_at else None,
            },
            "sweeper_running": self.sweeper.running,
        }
