"""
Circuit breaker for calls to external dependencies.

A fast-fail gate, not a scheduler: it never queues or pools calls. State is
shared by every caller of a dependency and is only touched under a lock held
around the bookkeeping, never around the protected call itself.

Transitions:
    CLOSED -> OPEN          failure_threshold consecutive failures
    OPEN -> HALF_OPEN       first call after reset_timeout has elapsed
    HALF_OPEN -> CLOSED     success_threshold trial successes
    HALF_OPEN -> OPEN       any trial failure
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Type, TypeVar

from .clock import SystemClock
from .errors import CircuitOpenError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only view of a breaker for status endpoints."""
    name: str
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    last_failure_at: Optional[datetime]
    next_retry_at: Optional[datetime]


class CircuitBreaker:
    """Three-state circuit breaker guarding one external dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        success_threshold: int = 2,
        half_open_max_calls: int = 1,
        excluded_exceptions: Tuple[Type[BaseException], ...] = (ValidationError,),
        clock=None,
    ):
        """Initialize a breaker in the CLOSED state.

        Args:
            name: Name of the protected dependency
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout: Seconds the circuit stays open before a trial
            success_threshold: Trial successes needed to close again
            half_open_max_calls: Concurrent trial calls allowed in HALF_OPEN
            excluded_exceptions: Errors re-raised without counting as failures
            clock: Object with ``now()`` returning an aware datetime
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if reset_timeout <= 0:
            raise ValueError("reset_timeout must be > 0")
        if success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = timedelta(seconds=reset_timeout)
        self.success_threshold = success_threshold
        self.half_open_max_calls = half_open_max_calls
        self.excluded_exceptions = excluded_exceptions
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._trials_in_flight = 0
        self._last_failure_at: Optional[datetime] = None
        self._next_retry_at: Optional[datetime] = None

    def execute(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument call to the protected dependency

        Returns:
            Whatever ``operation`` returns

        Raises:
            CircuitOpenError: If the circuit refused the call; ``operation``
                was not invoked
            Exception: Any error raised by ``operation``, after bookkeeping
        """
        trial = self._admit()
        try:
            result = operation()
        except self.excluded_exceptions:
            self._release(trial)
            raise
        except Exception:
            self._record_failure(trial)
            raise
        except BaseException:
            # Interrupts are not dependency failures but must free the trial slot.
            self._release(trial)
            raise
        self._record_success(trial)
        return result

    def get_state(self) -> CircuitSnapshot:
        with self._lock:
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._failures,
                consecutive_successes=self._successes,
                last_failure_at=self._last_failure_at,
                next_retry_at=self._next_retry_at,
            )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._close()
            self._failures = 0
            self._last_failure_at = None
        logger.info("[Circuit Breaker] %s manually reset", self.name)

    # ----- bookkeeping, always under self._lock -----

    def _admit(self) -> bool:
        """Decide whether a call may proceed; True if it runs as a HALF_OPEN trial."""
        with self._lock:
            now = self._clock.now()
            if self._state is CircuitState.OPEN:
                if now < self._next_retry_at:
                    raise CircuitOpenError(self.name, (self._next_retry_at - now).total_seconds())
                self._state = CircuitState.HALF_OPEN
                self._successes = 0
                self._trials_in_flight = 0
                logger.info("[Circuit Breaker] %s is now HALF_OPEN", self.name)

            if self._state is CircuitState.HALF_OPEN:
                if self._trials_in_flight >= self.half_open_max_calls:
                    raise CircuitOpenError(self.name, 1.0)
                self._trials_in_flight += 1
                return True
            return False

    def _release(self, trial: bool) -> None:
        if not trial:
            return
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trials_in_flight = max(0, self._trials_in_flight - 1)

    def _record_success(self, trial: bool) -> None:
        with self._lock:
            if not trial:
                # A call admitted while CLOSED that finishes after the circuit
                # opened must not close it again.
                if self._state is CircuitState.CLOSED:
                    self._failures = 0
                return

            if self._state is not CircuitState.HALF_OPEN:
                return
            self._trials_in_flight = max(0, self._trials_in_flight - 1)
            self._failures = 0
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._close()
                logger.info("[Circuit Breaker] %s is now CLOSED", self.name)

    def _record_failure(self, trial: bool) -> None:
        with self._lock:
            now = self._clock.now()
            self._failures += 1
            self._last_failure_at = now

            if trial and self._state is CircuitState.HALF_OPEN:
                self._trips(now)
                logger.warning("[Circuit Breaker] %s trial failed, OPEN again", self.name)
            elif self._state is CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._trips(now)
                logger.warning(
                    "[Circuit Breaker] %s is now OPEN (failures: %d)", self.name, self._failures
                )

    def _trips(self, now: datetime) -> None:
        self._state = CircuitState.OPEN
        self._next_retry_at = now + self.reset_timeout
        self._successes = 0
        self._trials_in_flight = 0

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._successes = 0
        self._trials_in_flight = 0
        self._next_retry_at = None


class BreakerRegistry:
    """Holds the single shared breaker for each protected dependency."""

    def __init__(self, clock=None, **defaults):
        self._clock = clock
        self._defaults = defaults
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str, **options) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first use.

        Options only apply when the breaker is created.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                settings = {**self._defaults, **options}
                breaker = CircuitBreaker(name, clock=self._clock, **settings)
                self._breakers[name] = breaker
            return breaker

    def snapshots(self) -> Dict[str, CircuitSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.get_state() for b in breakers}
