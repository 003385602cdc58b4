"""
Usage accounting pipeline.

Gates a request through throttling, the daily quota and the circuit breaker,
and records usage only after the protected call succeeded.

Pipeline Order:
1. Rate limit - Cheapest check, rejects callers hammering the endpoint
2. Daily quota - Rejects exhausted identities before any external call
3. Circuit breaker + provider call - Fails fast while the provider is down
4. Record usage - Only reached when the provider call succeeded
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from usage_guard.storage.models import FeatureType, UsageDetail
from .circuit_breaker import CircuitBreaker, CircuitSnapshot
from .errors import CircuitOpenError, QuotaExceededError, RateLimitedError, ServiceUnavailableError
from .quota import QuotaStore, UsageInfo, UsageStatistics, parse_feature_type, validate_identity
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumeResult:
    """Provider response plus the usage snapshot committed for it."""
    response: Any
    usage: UsageInfo


class UsageAccountant:
    """Orchestrates rate limiting, quota, circuit breaker and usage recording.

    Usage is recorded if and only if the provider call succeeded, so callers
    are never charged for a refused or failed attempt.
    """

    def __init__(
        self,
        quota_store: QuotaStore,
        rate_limiter: RateLimiter,
        breaker: CircuitBreaker,
        provider,
    ):
        """Initialize the accountant.

        Args:
            quota_store: Daily quota store
            rate_limiter: Per-identity throttle
            breaker: Breaker shared by every caller of ``provider``
            provider: Object with ``invoke(request)``; only ever called
                through ``breaker``
        """
        self.quota_store = quota_store
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self._provider = provider

    def consume(
        self,
        identity: str,
        feature_type: Union[str, FeatureType],
        is_premium: bool,
        request: Any,
        detail: Optional[UsageDetail] = None,
    ) -> ConsumeResult:
        """Run one metered provider call for ``identity``.

        Args:
            identity: Authenticated quota subject
            feature_type: Feature being consumed ("summary" or "question")
            is_premium: Premium flag from the identity service
            request: Request passed to the provider's ``invoke``
            detail: Optional usage detail, saved best-effort

        Returns:
            ConsumeResult with the provider response and committed usage

        Raises:
            ValidationError: If identity or feature_type is malformed
            RateLimitedError: If the identity is over its throughput limit
            QuotaExceededError: If the daily quota is exhausted
            ServiceUnavailableError: If the circuit breaker is open
            Exception: Provider errors, propagated unchanged and not charged
        """
        identity = validate_identity(identity)
        feature = parse_feature_type(feature_type)

        # 1. Throughput
        decision = self.rate_limiter.allow(identity, is_premium)
        if not decision.allowed:
            raise RateLimitedError(decision.retry_after_ms, limit=decision.limit)

        # 2. Daily quota
        if not self.quota_store.check_limit(identity, is_premium):
            usage = self.quota_store.get_usage(identity, is_premium)
            raise QuotaExceededError(usage.used, usage.limit, usage.reset_at)

        # 3. Provider call
        try:
            response = self.breaker.execute(lambda: self._provider.invoke(request))
        except CircuitOpenError as e:
            logger.warning("Provider %s unavailable for %s, retry after %.1fs", e.name, identity, e.retry_after)
            raise ServiceUnavailableError(e.retry_after, message=str(e)) from e

        # 4. Charge
        usage = self.quota_store.record_usage(identity, feature, is_premium, detail)
        logger.info(
            "Usage recorded - %s %s (%d/%s)%s",
            identity, feature.value, usage.used,
            "unlimited" if usage.is_premium else usage.limit,
            " [degraded]" if usage.degraded else "",
        )
        return ConsumeResult(response=response, usage=usage)

    def get_usage(self, identity: str, is_premium: bool = False) -> UsageInfo:
        return self.quota_store.get_usage(identity, is_premium)

    def check_limit(self, identity: str, is_premium: bool = False) -> bool:
        return self.quota_store.check_limit(identity, is_premium)

    def get_statistics(self, identity: str, days: int = 7) -> UsageStatistics:
        return self.quota_store.get_statistics(identity, days)

    def is_available(self) -> bool:
        return self.quota_store.is_available()

    def breaker_state(self) -> CircuitSnapshot:
        return self.breaker.get_state()
