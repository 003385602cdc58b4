"""
Daily quota store.

Per-identity, per-day consumption counters kept in a durable store, read
through a short-TTL cache, with an in-memory degraded mode used whenever the
durable store cannot be reached.

Degraded mode enforces the same arithmetic as the durable path but its counts
live only in this process. ``is_available()`` reports which mode the last call
ran in.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

from usage_guard.storage.cache import CacheKey, UsageCache
from usage_guard.storage.models import FeatureType, UsageCounter, UsageDetail
from usage_guard.storage.repository import UsageRepository
from .clock import SystemClock, local_day, next_midnight, resolve_timezone
from .errors import QuotaExceededError, TransientStoreError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNLIMITED = float("inf")
MAX_IDENTITY_LENGTH = 256
MAX_STATISTICS_DAYS = 90


class UsageSource(Enum):
    """Where a usage figure came from."""
    CACHE = "cache"
    DURABLE = "durable"
    DEGRADED = "degraded"


class StoreErrorKind(Enum):
    """Why a durable-store operation did not produce a value."""
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """Outcome of a durable-store operation: a value or an error kind.

    ``value`` may legitimately be None on success (e.g. no counter yet), so
    callers branch on ``ok``.
    """
    value: Optional[T] = None
    error: Optional[StoreErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T]) -> "StoreResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: StoreErrorKind, message: str) -> "StoreResult[T]":
        return cls(error=kind, message=message)


@dataclass(frozen=True)
class UsageInfo:
    """Quota position of an identity for the current day."""
    identity: str
    day: date
    used: int
    limit: Union[int, float]
    remaining: Union[int, float]
    reset_at: datetime
    summary_used: int
    question_used: int
    is_premium: bool
    source: UsageSource

    @property
    def degraded(self) -> bool:
        return self.source is UsageSource.DEGRADED


@dataclass(frozen=True)
class DailyUsage:
    """Counts for one calendar day."""
    day: Optional[date]
    summary_count: int = 0
    question_count: int = 0
    total_count: int = 0


@dataclass(frozen=True)
class UsageStatistics:
    """Aggregate usage over the last ``days`` days, clamped to retention."""
    identity: str
    days: int
    today: DailyUsage
    totals: DailyUsage
    daily: List[DailyUsage] = field(default_factory=list)
    source: UsageSource = UsageSource.DURABLE


def validate_identity(identity: Any) -> str:
    """Return the identity if it is a usable quota key.

    Raises:
        ValidationError: If identity is not a non-empty string of sane length
    """
    if not isinstance(identity, str) or not identity.strip():
        raise ValidationError("identity is required and cannot be empty")
    if len(identity) > MAX_IDENTITY_LENGTH:
        raise ValidationError(f"identity cannot exceed {MAX_IDENTITY_LENGTH} characters")
    return identity


def parse_feature_type(feature_type: Union[str, FeatureType]) -> FeatureType:
    """Coerce a feature type name into ``FeatureType``.

    Raises:
        ValidationError: If the value names no known feature
    """
    if isinstance(feature_type, FeatureType):
        return feature_type
    try:
        return FeatureType(feature_type)
    except ValueError:
        valid = [f.value for f in FeatureType]
        raise ValidationError(f"feature_type must be one of: {valid}")


class QuotaStore:
    """Per-identity daily quota backed by a durable store.

    Reads go cache -> durable store -> degraded counter. Writes go to the
    durable store through a transactional, limit-guarded increment; the cache
    entry for the key is deleted as soon as the write commits. Each call
    checks the durable store on its own, so the store can flip between
    durable and degraded mode from one call to the next.
    """

    def __init__(
        self,
        repository: UsageRepository,
        free_daily_limit: int = 5,
        cache: Optional[UsageCache] = None,
        timezone: str = "UTC",
        retention_days: int = 30,
        clock=None,
    ):
        """Initialize the quota store.

        Args:
            repository: Durable usage store
            free_daily_limit: Daily consume limit for non-premium identities
            cache: Read cache (defaults to a 60s TTL cache)
            timezone: Timezone whose midnight starts a new quota day
            retention_days: Days of history kept visible to statistics
            clock: Object with ``now()`` returning an aware datetime
        """
        if free_daily_limit < 1:
            raise ValueError("free_daily_limit must be >= 1")
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        self._repository = repository
        self.free_daily_limit = free_daily_limit
        self.retention_days = retention_days
        self.tz = resolve_timezone(timezone)
        self._clock = clock or SystemClock()
        self._cache = cache or UsageCache(clock=self._clock)
        self._available = False
        self._degraded: Dict[CacheKey, UsageCounter] = {}
        self._degraded_lock = threading.Lock()

    # ----- lifecycle & health -----

    def init(self) -> bool:
        """Create the durable schema if needed and check reachability.

        Safe to call again after an outage to check again.

        Returns:
            True if the durable store is reachable
        """
        result = self._durable(self._repository.initialize_schema)
        if result.ok:
            logger.info("Quota store using durable storage")
        else:
            logger.warning("Quota store starting in degraded mode: %s", result.message)
        return result.ok

    def is_available(self) -> bool:
        """Whether the last durable-store call succeeded."""
        return self._available

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Usage cache cleared")

    # ----- calendar -----

    def current_day(self, now: Optional[datetime] = None) -> date:
        return local_day(now or self._clock.now(), self.tz)

    def reset_at(self, now: Optional[datetime] = None) -> datetime:
        """Next local midnight, when the daily quota resets."""
        return next_midnight(now or self._clock.now(), self.tz)

    def retention_cutoff(self, now: Optional[datetime] = None) -> date:
        """Oldest day still inside the retention window."""
        return self.current_day(now) - timedelta(days=self.retention_days)

    # ----- quota operations -----

    def get_usage(self, identity: str, is_premium: bool = False) -> UsageInfo:
        """Current day's usage for an identity.

        Args:
            identity: Quota subject
            is_premium: Premium identities report an unlimited limit

        Returns:
            UsageInfo; ``source`` tells whether it came from cache, the
            durable store or the degraded counter
        """
        identity = validate_identity(identity)
        now = self._clock.now()
        key = (identity, self.current_day(now))

        cached = self._cache.get(key)
        if cached is not None:
            return self._usage_info(key, cached, is_premium, now, UsageSource.CACHE)

        generation = self._cache.generation(key)
        result = self._durable(self._repository.get_counter, *key)
        if result.ok:
            if result.value is not None:
                self._cache.put(key, result.value, generation)
            return self._usage_info(key, result.value, is_premium, now, UsageSource.DURABLE)

        logger.warning("Reading degraded usage for %s: %s", identity, result.message)
        return self._usage_info(key, self._degraded_counter(key), is_premium, now, UsageSource.DEGRADED)

    def check_limit(self, identity: str, is_premium: bool = False) -> bool:
        """True if the identity may consume once more today."""
        identity = validate_identity(identity)
        if is_premium:
            return True
        usage = self.get_usage(identity, is_premium)
        allowed = usage.used < usage.limit
        if not allowed:
            logger.warning("Daily limit reached for %s (%d/%s)", identity, usage.used, usage.limit)
        return allowed

    def record_usage(
        self,
        identity: str,
        feature_type: Union[str, FeatureType],
        is_premium: bool = False,
        detail: Optional[UsageDetail] = None,
    ) -> UsageInfo:
        """Commit one unit of consumption for today.

        The increment is refused atomically once a free identity reaches its
        limit, so concurrent callers cannot over-grant. The optional detail is
        written after the counter commit and its failure is only logged.

        Args:
            identity: Quota subject
            feature_type: Feature counter to increment
            is_premium: Premium flag snapshot; premium writes are not limited
            detail: Optional usage detail record

        Returns:
            UsageInfo reflecting the committed counter

        Raises:
            ValidationError: If identity or feature_type is malformed
            QuotaExceededError: If the limit was reached before this write
        """
        identity = validate_identity(identity)
        feature = parse_feature_type(feature_type)
        now = self._clock.now()
        key = (identity, self.current_day(now))
        limit = None if is_premium else self.free_daily_limit

        result = self._durable(
            self._repository.increment_counter, identity, key[1], feature, is_premium, now, limit
        )
        if not result.ok:
            logger.warning("Recording %s usage for %s in degraded mode: %s", feature.value, identity, result.message)
            counter = self._degraded_increment(key, feature, is_premium, now, limit)
            if detail is not None:
                logger.warning("Durable store unavailable, usage detail for %s not saved", identity)
            return self._usage_info(key, counter, is_premium, now, UsageSource.DEGRADED)

        self._cache.invalidate(key)
        counter = result.value
        if counter is None:
            used = self._current_total(key, fallback=self.free_daily_limit)
            logger.warning("Daily limit reached for %s (%d/%d)", identity, used, self.free_daily_limit)
            raise QuotaExceededError(used, self.free_daily_limit, self.reset_at(now))

        if detail is not None:
            self._append_detail(key, detail, now)

        logger.debug("Recorded %s usage for %s (%d/%s)", feature.value, identity, counter.total_count, limit or "unlimited")
        return self._usage_info(key, counter, is_premium, now, UsageSource.DURABLE)

    # ----- reporting -----

    def get_statistics(self, identity: str, days: int = 7) -> UsageStatistics:
        """Aggregate usage over the last ``days`` days.

        The window never reaches past the retention window and archived
        counters are left out.

        Args:
            identity: Quota subject
            days: Look-back in days, 1-90

        Returns:
            UsageStatistics with a zero-filled, oldest-first daily breakdown

        Raises:
            ValidationError: If identity or days is out of range
        """
        identity = validate_identity(identity)
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= MAX_STATISTICS_DAYS:
            raise ValidationError(f"days must be between 1 and {MAX_STATISTICS_DAYS}")

        now = self._clock.now()
        today = self.current_day(now)
        span = min(days, self.retention_days + 1)
        start = today - timedelta(days=span - 1)

        result = self._durable(self._repository.list_counters, identity, start, today)
        if result.ok:
            counters = result.value or []
            source = UsageSource.DURABLE
        else:
            logger.warning("Reading degraded statistics for %s: %s", identity, result.message)
            with self._degraded_lock:
                counters = [
                    c for (owner, day), c in self._degraded.items()
                    if owner == identity and start <= day <= today
                ]
            source = UsageSource.DEGRADED

        by_day = {c.day: c for c in counters}
        daily = []
        for offset in range(span):
            day = start + timedelta(days=offset)
            counter = by_day.get(day)
            if counter is None:
                daily.append(DailyUsage(day=day))
            else:
                daily.append(DailyUsage(
                    day=day,
                    summary_count=counter.summary_count,
                    question_count=counter.question_count,
                    total_count=counter.total_count,
                ))

        totals = DailyUsage(
            day=None,
            summary_count=sum(d.summary_count for d in daily),
            question_count=sum(d.question_count for d in daily),
            total_count=sum(d.total_count for d in daily),
        )
        return UsageStatistics(
            identity=identity,
            days=span,
            today=daily[-1],
            totals=totals,
            daily=daily,
            source=source,
        )

    def get_details(self, identity: str, day: Optional[date] = None, limit: int = 20) -> List[UsageDetail]:
        """Usage details recorded for a day (today by default), newest first.

        Returns an empty list when the durable store is unavailable.
        """
        identity = validate_identity(identity)
        if not 1 <= limit <= 100:
            raise ValidationError("limit must be between 1 and 100")
        result = self._durable(self._repository.list_details, identity, day or self.current_day(), limit)
        if not result.ok:
            logger.warning("Usage details for %s unavailable: %s", identity, result.message)
            return []
        return result.value or []

    # ----- retention -----

    def archive_expired(self, cutoff: date) -> StoreResult[int]:
        """Archive durable counters dated before ``cutoff``."""
        return self._durable(self._repository.archive_counters_before, cutoff, self._clock.now())

    def purge_degraded(self, cutoff: date) -> int:
        """Delete degraded counters dated before ``cutoff``; return how many."""
        with self._degraded_lock:
            expired = [key for key in self._degraded if key[1] < cutoff]
            for key in expired:
                del self._degraded[key]
        self._cache.prune_before(cutoff)
        return len(expired)

    # ----- internals -----

    def _durable(self, operation: Callable[..., T], *args) -> StoreResult[T]:
        """Run a durable-store operation, turning store failures into a result."""
        try:
            value = operation(*args)
        except TransientStoreError as e:
            self._available = False
            return StoreResult.failure(StoreErrorKind.UNAVAILABLE, str(e))
        if not self._available:
            logger.info("Durable usage store reachable")
            self._available = True
        return StoreResult.success(value)

    def _degraded_counter(self, key: CacheKey) -> Optional[UsageCounter]:
        with self._degraded_lock:
            return self._degraded.get(key)

    def _degraded_increment(
        self,
        key: CacheKey,
        feature: FeatureType,
        is_premium: bool,
        now: datetime,
        limit: Optional[int],
    ) -> UsageCounter:
        with self._degraded_lock:
            counter = self._degraded.get(key)
            if counter is None:
                # Start from the last durable snapshot we still trust, if any.
                counter = self._cache.get(key) or UsageCounter(
                    identity=key[0], day=key[1], created_at=now, updated_at=now
                )
            if limit is not None and counter.total_count >= limit:
                logger.warning("Daily limit reached for %s (%d/%d, degraded)", key[0], counter.total_count, limit)
                raise QuotaExceededError(counter.total_count, limit, self.reset_at(now))
            counter = replace(
                counter,
                total_count=counter.total_count + 1,
                is_premium=is_premium,
                updated_at=now,
                **{feature.counter_field: counter.count_for(feature) + 1},
            )
            self._degraded[key] = counter
            return counter

    def _current_total(self, key: CacheKey, fallback: int) -> int:
        result = self._durable(self._repository.get_counter, *key)
        if result.ok and result.value is not None:
            return result.value.total_count
        return fallback

    def _append_detail(self, key: CacheKey, detail: UsageDetail, now: datetime) -> None:
        try:
            self._repository.append_detail(key[0], key[1], detail, now)
        except TransientStoreError as e:
            logger.warning("Usage detail for %s not saved: %s", key[0], e)

    def _usage_info(
        self,
        key: CacheKey,
        counter: Optional[UsageCounter],
        is_premium: bool,
        now: datetime,
        source: UsageSource,
    ) -> UsageInfo:
        used = counter.total_count if counter else 0
        limit = UNLIMITED if is_premium else self.free_daily_limit
        return UsageInfo(
            identity=key[0],
            day=key[1],
            used=used,
            limit=limit,
            remaining=UNLIMITED if is_premium else max(0, limit - used),
            reset_at=self.reset_at(now),
            summary_used=counter.summary_count if counter else 0,
            question_used=counter.question_count if counter else 0,
            is_premium=is_premium,
            source=source,
        )
