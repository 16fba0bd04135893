"""
Circuit breaker guarding model backends.

States:
    closed     → calls flow; consecutive failures are counted
    open       → calls are rejected until ``reset_after`` seconds pass
    half-open  → one probe call is let through; success closes, failure re-opens
"""
import logging
import time

logger = logging.getLogger("orrery.engine.circuit_breaker")


class CircuitBreaker:
    """Consecutive-failure breaker for a single asyncio event loop."""

    __slots__ = ("name", "threshold", "reset_after", "_failures", "_opened_at", "_probing", "_clock")

    def __init__(self, name: str = "default", threshold: int = 5, reset_after: float = 30.0, clock=time.monotonic):
        self.name = name
        self.threshold = threshold
        self.reset_after = reset_after
        self._failures = 0
        self._opened_at: float | None = None
        self._probing = False
        self._clock = clock

    def is_open(self) -> bool:
        """True while calls must be rejected; lets one probe through after the cool-down."""
        if self._opened_at is None:
            return False
        waited = self._clock() - self._opened_at
        if waited <= self.reset_after:
            return True
        logger.info("Circuit %s half-open after %.0fs, allowing probe", self.name, waited)
        self._opened_at = None
        self._probing = True
        return False

    @property
    def state(self) -> str:
        if self._probing:
            return "half-open"
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at > self.reset_after:
            return "half-open"
        return "open"

    @property
    def failure_count(self) -> int:
        return self._failures

    def record_success(self) -> None:
        self.reset()

    def record_failure(self) -> None:
        self._failures += 1
        if self._probing or self._failures >= self.threshold:
            self._probing = False
            self._opened_at = self._clock()
            logger.warning("Circuit %s OPEN after %d consecutive failures", self.name, self._failures)

    def reset(self) -> None:
        self._failures = 0
        self._opened_at = None
        self._probing = False

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self.state!r}, failures={self._failures}/{self.threshold})"
