"""
Circuit breaker for credential refresh calls.

Prevents hammering the credential authority with requests that keep failing.
After ``failure_threshold`` consecutive failures the circuit opens and every
request is refused until ``reset_window`` seconds have passed since it opened.
The first request after the window closes the circuit again with a fresh
failure count; there is no half-open probing state.
"""

import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESET_WINDOW = 60.0


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"      # Blocking calls


@dataclass
class CircuitStatus:
    """Circuit breaker status information."""
    state: CircuitState
    failure_count: int
    last_failure_time: Optional[float]
    opened_at: Optional[float]
    service_name: str

    @property
    def is_allowing_requests(self) -> bool:
        return self.state == CircuitState.CLOSED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "opened_at": self.opened_at,
            "service_name": self.service_name,
        }


class CircuitBreaker:
    """
    Circuit breaker for protecting credential authority calls.

    Usage:
        breaker = CircuitBreaker("token-refresh", clock=scheduler.time)

        if breaker.allow_request():
            try:
                token = await authority.refresh()
                breaker.record_success()
            except Exception:
                breaker.record_failure()
                raise
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_window: float = DEFAULT_RESET_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize circuit breaker.

        Args:
            service_name: Name of the protected call (for logging)
            failure_threshold: Consecutive failures before opening the circuit
            reset_window: Seconds after opening before requests flow again
            clock: Epoch-seconds clock, injectable for virtual time
        """
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.reset_window = reset_window
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def get_status(self) -> CircuitStatus:
        """Get current circuit breaker status."""
        return CircuitStatus(
            state=self._state,
            failure_count=self._failure_count,
            last_failure_time=self._last_failure_time,
            opened_at=self._opened_at,
            service_name=self.service_name,
        )

    def remaining_open_time(self) -> float:
        """Seconds until an open circuit lets requests through again."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.reset_window - (self._clock() - self._opened_at))

    def allow_request(self) -> bool:
        """
        Check if a request should be allowed.

        An open circuit whose reset window has elapsed is closed here, so the
        first request after the window always goes through.

        Returns:
            True if request should proceed, False if circuit is open
        """
        if self._state == CircuitState.CLOSED:
            return True

        elapsed = self._clock() - (self._opened_at or 0.0)
        if elapsed < self.reset_window:
            logger.debug(
                f"Circuit {self.service_name}: OPEN - blocking request "
                f"({self.reset_window - elapsed:.1f}s until reset)"
            )
            return False

        logger.info(f"Circuit {self.service_name}: reset window elapsed, closing circuit")
        self._close()
        return True

    def record_success(self):
        """Record a successful call."""
        if self._failure_count > 0 or self._state == CircuitState.OPEN:
            self._close()

    def record_failure(self):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
            logger.warning(
                f"Circuit {self.service_name}: failure threshold reached "
                f"({self._failure_count}/{self.failure_threshold}), opening circuit"
            )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()

    def reset(self):
        """Manually reset the circuit breaker."""
        logger.info(f"Circuit {self.service_name}: manual reset")
        self._close()
        self._last_failure_time = None

    def _close(self):
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None

    def protect(self, fallback: Optional[Callable[[], Any]] = None):
        """
        Decorator to protect an async function with the circuit breaker.

        Args:
            fallback: Optional function to call when circuit is open

        Usage:
            @breaker.protect()
            async def refresh():
                return await authority.refresh()
        """
        def decorator(func: Callable) -> Callable:
            @functools.wraps(func)
            async def wrapper(*args, **kwargs):
                if not self.allow_request():
                    if fallback:
                        return fallback()
                    raise CircuitOpenError(
                        f"Circuit breaker {self.service_name} is OPEN"
                    )

                try:
                    result = await func(*args, **kwargs)
                except Exception:
                    self.record_failure()
                    raise
                self.record_success()
                return result

            return wrapper
        return decorator
