"""
Retention sweeper.

Background task that fires at the next local midnight and every midnight
after, archiving durable usage counters older than the retention window and
deleting expired degraded-mode counters.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from .clock import SystemClock, next_midnight
from .quota import QuotaStore
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    """Outcome of one sweep."""
    cutoff: date
    archived: int
    deleted: int
    pruned_windows: int = 0
    store_available: bool = True


class RetentionSweeper:
    """Cancellable, midnight-aligned periodic retention task.

    ``run_forever`` alternates between waiting for the next local midnight
    and running ``run_once`` until ``stop`` is called. The wait function is
    injectable so the loop can be driven by a fake clock.
    """

    def __init__(
        self,
        quota_store: QuotaStore,
        rate_limiter: Optional[RateLimiter] = None,
        clock=None,
        wait: Optional[Callable[[float], bool]] = None,
    ):
        """Initialize the sweeper.

        Args:
            quota_store: Store whose counters are swept
            rate_limiter: Limiter whose idle windows are pruned on each run
            clock: Object with ``now()`` returning an aware datetime
            wait: Called with a delay in seconds; returns True to stop the
                loop. Defaults to waiting on the stop event.
        """
        self.quota_store = quota_store
        self.rate_limiter = rate_limiter
        self._clock = clock or SystemClock()
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def next_run_at(self, now: Optional[datetime] = None) -> datetime:
        return next_midnight(now or self._clock.now(), self.quota_store.tz)

    def run_once(self) -> SweepReport:
        """Archive or delete counters older than the retention window.

        The durable archive is a single statement over a point-in-time
        snapshot; counters created while it runs are left for the next sweep.
        A durable-store failure is logged and reported as nothing archived.
        """
        now = self._clock.now()
        cutoff = self.quota_store.retention_cutoff(now)
        logger.info("Retention sweep started, cutoff %s", cutoff.isoformat())

        result = self.quota_store.archive_expired(cutoff)
        if result.ok:
            archived = result.value or 0
        else:
            archived = 0
            logger.warning("Retention sweep could not reach durable store: %s", result.message)

        deleted = self.quota_store.purge_degraded(cutoff)
        pruned = self.rate_limiter.prune_idle() if self.rate_limiter is not None else 0
        self.runs += 1

        logger.info("Retention sweep done: %d archived, %d deleted, %d idle windows pruned", archived, deleted, pruned)
        return SweepReport(
            cutoff=cutoff,
            archived=archived,
            deleted=deleted,
            pruned_windows=pruned,
            store_available=result.ok,
        )

    def run_forever(self) -> None:
        """Run a sweep at every local midnight until stopped."""
        while not self._stop.is_set():
            delay = (self.next_run_at() - self._clock.now()).total_seconds()
            if self._wait(max(delay, 0.0)) or self._stop.is_set():
                break
            try:
                self.run_once()
            except Exception:
                logger.exception("Retention sweep failed")

    def start(self) -> None:
        """Start the sweep loop in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info("Retention sweeper started, next run %s", self.next_run_at().isoformat())

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the loop to stop and wait for the thread to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Retention sweeper stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
