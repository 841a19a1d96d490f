"""Circuit breaker guarding scoring dependencies.

When scoring keeps failing (database timeouts, unavailable lookups), the
breaker opens and subsequent scoring calls fail fast into the orchestrator's
fallback instead of piling up retries.

States:
    CLOSED: Normal operation, calls pass through
    OPEN: Dependency is failing, calls are rejected immediately
    HALF_OPEN: Probing whether the dependency has recovered

Transitions:
    CLOSED -> OPEN: consecutive failures reach failure_threshold, or the error
        rate over a full sliding window reaches error_rate_threshold
    OPEN -> HALF_OPEN: after recovery_timeout
    HALF_OPEN -> CLOSED: success_threshold consecutive successes
    HALF_OPEN -> OPEN: any failure
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, TypeVar

from assessment_engine.core.config import settings
from assessment_engine.core.datetime_utils import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")
FailurePredicate = Callable[[Exception], bool]

TRANSITION_HISTORY = 50
REPORTED_TRANSITIONS = 5


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds for one breaker; defaults mirror the engine settings."""

    failure_threshold: int = 5
    error_rate_threshold: float = 0.5
    recovery_timeout: float = 30.0
    success_threshold: int = 2
    window_size: int = 10
    enabled: bool = True

    def __post_init__(self) -> None:
        problems = [
            message
            for invalid, message in (
                (self.failure_threshold < 1, "failure_threshold must be at least 1"),
                (
                    not 0.0 <= self.error_rate_threshold <= 1.0,
                    "error_rate_threshold must be between 0.0 and 1.0",
                ),
                (self.recovery_timeout < 0, "recovery_timeout must be non-negative"),
                (self.success_threshold < 1, "success_threshold must be at least 1"),
                (self.window_size < 1, "window_size must be at least 1"),
            )
            if invalid
        ]
        if problems:
            raise ValueError("; ".join(problems))

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            error_rate_threshold=settings.CIRCUIT_BREAKER_ERROR_RATE_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
            success_threshold=settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
            window_size=settings.CIRCUIT_BREAKER_WINDOW_SIZE,
            enabled=settings.CIRCUIT_BREAKER_ENABLED,
        )


@dataclass(frozen=True)
class StateChange:
    at: datetime
    from_state: CircuitState
    to_state: CircuitState
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "timestamp": self.at.isoformat(),
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "reason": self.reason,
        }


class OutcomeWindow:
    """Last ``size`` call outcomes plus the current success/failure streak."""

    def __init__(self, size: int):
        self.size = size
        self._outcomes: Deque[bool] = deque(maxlen=size)
        self.streak_ok = 0
        self.streak_failed = 0

    def add(self, ok: bool) -> None:
        self._outcomes.append(ok)
        if ok:
            self.streak_ok, self.streak_failed = self.streak_ok + 1, 0
        else:
            self.streak_ok, self.streak_failed = 0, self.streak_failed + 1

    @property
    def full(self) -> bool:
        return len(self._outcomes) == self.size

    @property
    def error_rate(self) -> float:
        if not self._outcomes:
            return 0.0
        return self._outcomes.count(False) / len(self._outcomes)

    def clear(self) -> None:
        self._outcomes.clear()
        self.streak_ok = self.streak_failed = 0


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of a breaker, safe to hand to other threads."""

    name: str
    state: CircuitState
    consecutive_failures: int
    total_calls: int
    total_failures: int
    rejected_calls: int
    error_rate: float
    transitions: List[StateChange]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "rejected_calls": self.rejected_calls,
            "error_rate": self.error_rate,
            "recent_state_changes": [
                change.to_dict() for change in self.transitions[-REPORTED_TRANSITIONS:]
            ],
        }


class CircuitBreakerOpen(Exception):
    """A call was rejected because the breaker is open."""

    def __init__(self, name: str, time_until_retry: float):
        self.name = name
        self.time_until_retry = time_until_retry
        super().__init__(
            f"Circuit breaker '{name}' is open; next probe in {time_until_retry:.1f}s"
        )


class CircuitBreaker:
    """Thread-safe breaker around one protected operation.

    Exceptions for which ``counts_as_failure`` returns False (invalid input,
    unknown session) pass through without being recorded at all.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        counts_as_failure: Optional[FailurePredicate] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig.from_settings()
        self._clock = clock
        self._counts_as_failure = counts_as_failure or (lambda exc: True)
        self._lock = threading.RLock()
        self._init_counters()

    def _init_counters(self) -> None:
        self._state = CircuitState.CLOSED
        self._window = OutcomeWindow(self.config.window_size)
        self._opened_at: Optional[float] = None
        self._total_calls = 0
        self._total_failures = 0
        self._rejected = 0
        self._transitions: Deque[StateChange] = deque(maxlen=TRANSITION_HISTORY)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _remaining_open_time(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.config.recovery_timeout - (self._clock() - self._opened_at))

    def _maybe_half_open(self) -> None:
        if self._state is CircuitState.OPEN and self._remaining_open_time() == 0.0:
            self._move(CircuitState.HALF_OPEN, "recovery timeout elapsed")

    def _move(self, target: CircuitState, reason: str) -> None:
        source = self._state
        if source is target:
            return
        self._state = target
        self._transitions.append(StateChange(utc_now(), source, target, reason))
        logger.info(f"Circuit breaker [{self.name}]: {source.value} -> {target.value} ({reason})")

        if target is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif target is CircuitState.HALF_OPEN:
            self._window.streak_ok = 0
        else:
            self._opened_at = None
            self._window.clear()

    def _trips(self) -> bool:
        if self._window.streak_failed >= self.config.failure_threshold:
            return True
        return self._window.full and self._window.error_rate >= self.config.error_rate_threshold

    def _record(self, ok: bool) -> None:
        with self._lock:
            self._total_calls += 1
            self._window.add(ok)
            if ok:
                if (
                    self._state is CircuitState.HALF_OPEN
                    and self._window.streak_ok >= self.config.success_threshold
                ):
                    self._move(CircuitState.CLOSED, "probe calls succeeded")
                return

            self._total_failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._move(CircuitState.OPEN, "probe call failed")
            elif self._state is CircuitState.CLOSED and self._trips():
                self._move(
                    CircuitState.OPEN,
                    f"{self._window.streak_failed} consecutive failures, "
                    f"error rate {self._window.error_rate:.0%}",
                )

    def record_success(self) -> None:
        if self.config.enabled:
            self._record(True)

    def record_failure(self) -> None:
        if self.config.enabled:
            self._record(False)

    def execute(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` unless the breaker is open.

        Raises:
            CircuitBreakerOpen: If the call was rejected
        """
        if not self.config.enabled:
            return func(*args, **kwargs)

        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.OPEN:
                self._rejected += 1
                raise CircuitBreakerOpen(self.name, self._remaining_open_time())

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if self._counts_as_failure(e):
                self.record_failure()
            raise
        self.record_success()
        return result

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._window.streak_failed,
                total_calls=self._total_calls,
                total_failures=self._total_failures,
                rejected_calls=self._rejected,
                error_rate=self._window.error_rate,
                transitions=list(self._transitions),
            )

    def get_stats(self) -> Dict[str, Any]:
        return self.snapshot().to_dict()

    def reset(self) -> None:
        with self._lock:
            previous = self._state
            self._init_counters()
        logger.info(f"Circuit breaker [{self.name}] reset from {previous.value}")


class CircuitBreakerRegistry:
    """Named breakers sharing one default config."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self._config = config
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self, name: str, counts_as_failure: Optional[FailurePredicate] = None
    ) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name, config=self._config, counts_as_failure=counts_as_failure
                )
                self._breakers[name] = breaker
            return breaker

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.get_stats() for breaker in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()


_registry: Optional[CircuitBreakerRegistry] = None
_registry_lock = threading.Lock()


def get_circuit_breaker_registry() -> CircuitBreakerRegistry:
    """Process-wide registry, created on first use."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = CircuitBreakerRegistry()
        return _registry


def reset_circuit_breaker_registry() -> None:
    """Drop the process-wide registry (tests)."""
    global _registry
    with _registry_lock:
        registry, _registry = _registry, None
    if registry is not None:
        registry.reset_all()
