"""
Per-identity request throttle.

Bounds burst throughput with a sliding log of request timestamps. Independent
of the daily quota: windows roll on their own schedule, not at midnight.
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

from .clock import SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitTier:
    """Maximum requests allowed per rolling window."""
    max_requests: int
    window_seconds: float

    def __post_init__(self):
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")


FREE_TIER = RateLimitTier(max_requests=30, window_seconds=60.0)
PREMIUM_TIER = RateLimitTier(max_requests=100, window_seconds=60.0)


@dataclass(frozen=True)
class RateDecision:
    """Result of a throttle check."""
    allowed: bool
    limit: int
    remaining: int
    retry_after_ms: Optional[int] = None


class RateLimiter:
    """Sliding-window rate limiter with separate free and premium tiers.

    Each identity keeps a deque of accepted request timestamps. A check prunes
    entries older than the tier's window, then either records the request or
    rejects it with the time until the oldest entry leaves the window.
    Rejected requests are not recorded.
    """

    def __init__(
        self,
        free_tier: RateLimitTier = FREE_TIER,
        premium_tier: RateLimitTier = PREMIUM_TIER,
        clock=None,
    ):
        self.free_tier = free_tier
        self.premium_tier = premium_tier
        self._clock = clock or SystemClock()
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def tier_for(self, is_premium: bool) -> RateLimitTier:
        return self.premium_tier if is_premium else self.free_tier

    def allow(self, identity: str, is_premium: bool = False) -> RateDecision:
        """Record a request for ``identity`` if its window has room.

        Args:
            identity: Throttled subject
            is_premium: Selects the premium tier

        Returns:
            RateDecision; ``retry_after_ms`` is set when the request is rejected
        """
        tier = self.tier_for(is_premium)
        now = self._clock.now().timestamp()

        with self._lock:
            window = self._windows.setdefault(identity, deque())
            self._prune(window, now - tier.window_seconds)

            if len(window) >= tier.max_requests:
                retry_after = window[0] + tier.window_seconds - now
                decision = RateDecision(
                    allowed=False,
                    limit=tier.max_requests,
                    remaining=0,
                    retry_after_ms=max(1, math.ceil(retry_after * 1000)),
                )
            else:
                window.append(now)
                decision = RateDecision(
                    allowed=True,
                    limit=tier.max_requests,
                    remaining=tier.max_requests - len(window),
                )

        if not decision.allowed:
            logger.warning(
                "[Rate Limit Exceeded] %s - limit %d/%.0fs, retry after %dms",
                identity, tier.max_requests, tier.window_seconds, decision.retry_after_ms,
            )
        return decision

    def reset(self, identity: str) -> None:
        with self._lock:
            self._windows.pop(identity, None)

    def prune_idle(self) -> int:
        """Drop identities with no request inside the widest window.

        Returns:
            Number of identities dropped
        """
        horizon = max(self.free_tier.window_seconds, self.premium_tier.window_seconds)
        cutoff = self._clock.now().timestamp() - horizon
        with self._lock:
            idle = []
            for identity, window in self._windows.items():
                self._prune(window, cutoff)
                if not window:
                    idle.append(identity)
            for identity in idle:
                del self._windows[identity]
        return len(idle)

    @staticmethod
    def _prune(window: Deque[float], cutoff: float) -> None:
        while window and window[0] <= cutoff:
            window.popleft()
