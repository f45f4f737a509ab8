"""
Circuit breaker for unreliable dependencies (one instance per source/collaborator).

    CLOSED --(failure_threshold failures inside window_s)--> OPEN
    OPEN --(timeout_s elapsed, next call)--> HALF_OPEN
    HALF_OPEN --(success_threshold consecutive successes)--> CLOSED
    HALF_OPEN --(any failure)--> OPEN

State is only mutated inside ``execute``. The checks before and the
bookkeeping after the awaited call run without yielding, so on a single
event loop no lock is needed.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from timeline_ingest.core.errors import CircuitOpenError
from timeline_ingest.core.logging import get_logger

logger = get_logger()

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 3
    success_threshold: int = 2
    # Seconds spent OPEN before a trial call is let through.
    timeout_s: float = 60.0
    # Rolling window (seconds) in which failures are counted.
    window_s: float = 60.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ValueError("circuit breaker thresholds must be >= 1")
        if self.timeout_s < 0 or self.window_s <= 0:
            raise ValueError("circuit breaker timeout must be >= 0 and window > 0")


@dataclass
class CircuitBreakerState:
    state: CircuitState
    failures: int
    successes: int
    failure_timestamps: List[float] = field(default_factory=list)
    last_failure_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
        }


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_timestamps: List[float] = []
        self._successes = 0
        self._opened_at: Optional[float] = None
        self._last_failure_at: Optional[datetime] = None

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` under breaker protection.

        Raises CircuitOpenError without calling ``fn`` while OPEN and the
        cool-down has not elapsed; otherwise re-raises whatever ``fn`` raised
        after recording the failure.
        """
        if self._state == CircuitState.OPEN:
            if not self._can_attempt():
                raise CircuitOpenError(self.name, self._next_attempt_at())
            self._transition(CircuitState.HALF_OPEN)

        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def wrap(self, fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        async def _wrapped(*args: Any, **kwargs: Any) -> T:
            return await self.execute(lambda: fn(*args, **kwargs))

        return _wrapped

    # -------- bookkeeping ----------------------------------------------------

    def _on_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._successes += 1
            logger.info(
                "circuit_breaker_half_open_success",
                breaker=self.name,
                successes=self._successes,
                success_threshold=self.config.success_threshold,
            )
            if self._successes >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)
            return
        self._failure_timestamps.clear()

    def _on_failure(self) -> None:
        now = self._clock()
        self._last_failure_at = datetime.now(timezone.utc)
        window = self.config.window_s
        self._failure_timestamps = [ts for ts in self._failure_timestamps if now - ts < window]
        self._failure_timestamps.append(now)
        failures = len(self._failure_timestamps)

        logger.warning(
            "circuit_breaker_failure",
            breaker=self.name,
            state=self._state.value,
            failures=failures,
            failure_threshold=self.config.failure_threshold,
        )

        if self._state == CircuitState.HALF_OPEN or failures >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)

    def _can_attempt(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock() - self._opened_at >= self.config.timeout_s

    def _next_attempt_at(self) -> Optional[datetime]:
        if self._opened_at is None:
            return None
        remaining = max(0.0, self.config.timeout_s - (self._clock() - self._opened_at))
        return datetime.now(timezone.utc) + timedelta(seconds=remaining)

    def _transition(self, target: CircuitState) -> None:
        previous = self._state
        self._state = target
        if target == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._successes = 0
        elif target == CircuitState.HALF_OPEN:
            self._successes = 0
            self._failure_timestamps = []
        else:
            self._opened_at = None
            self._successes = 0
            self._failure_timestamps = []
        logger.info(
            "circuit_breaker_transition",
            breaker=self.name,
            from_state=previous.value,
            to_state=target.value,
            next_attempt_at=(
                self._next_attempt_at().isoformat() if target == CircuitState.OPEN else None
            ),
        )

    # -------- inspection -----------------------------------------------------

    def get_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self._state,
            failures=len(self._failure_timestamps),
            successes=self._successes,
            failure_timestamps=list(self._failure_timestamps),
            last_failure_at=self._last_failure_at,
            next_attempt_at=self._next_attempt_at() if self._state == CircuitState.OPEN else None,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    def reset(self) -> None:
        if self._state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)
        self._failure_timestamps = []
        self._successes = 0

    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN and not self._can_attempt()

    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN


class CircuitBreakerRegistry:
    """
    One breaker per dependency name, created lazily.

    Pass an instance into the orchestrator; share it across runs when fault
    history should survive between runs in the same process.
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, config or self.default_config, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def clear(self) -> None:
        self._breakers.clear()

    def states(self) -> Dict[str, CircuitBreakerState]:
        return {name: breaker.get_state() for name, breaker in self._breakers.items()}


async def with_circuit_breaker(breaker: CircuitBreaker, fn: Callable[[], Awaitable[T]]) -> T:
    return await breaker.execute(fn)
