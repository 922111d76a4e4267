"""
Razorpay Circuit Breaker

Implements the circuit breaker pattern for Razorpay API calls to prevent
cascading failures when Razorpay is experiencing issues.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Razorpay is failing, block requests to prevent overload
- HALF_OPEN: Testing if Razorpay has recovered

State is process-scoped; each replica trips and recovers on its own.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from backend.src.billing.shared.clock import Clock, system_clock
from backend.src.billing.shared.exceptions import CircuitBreakerOpenError, UpstreamUnavailableError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class RazorpayCircuitBreaker:
    """
    Circuit breaker for Razorpay API calls.

    Opens after `failure_threshold` consecutive failures, stays open for
    `recovery_timeout` seconds, then lets the next call through in HALF_OPEN.
    A success closes the circuit; a failure while HALF_OPEN re-opens it.
    Provider 4xx answers prove the provider is reachable and count as success.

    Usage:
        breaker = RazorpayCircuitBreaker()
        result = await breaker.safe_call(client.fetch_subscription, "sub_123")
    """

    def __init__(
        self,
        circuit_name: str = "razorpay_api",
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Optional[Clock] = None
    ):
        """
        Initialize the circuit breaker.

        Args:
            circuit_name: Unique name for this circuit
            failure_threshold: Number of consecutive failures before opening circuit
            recovery_timeout: Seconds to wait before testing recovery
            clock: Time source (defaults to the system clock)
        """
        self.circuit_name = circuit_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock or system_clock
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._opened_at: Optional[datetime] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        """True while calls would be rejected without reaching Razorpay."""
        return self._state == CircuitState.OPEN and not self._recovery_elapsed()

    async def safe_call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a Razorpay API call with circuit breaker protection.

        Args:
            func: Async function to call
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result from the call

        Raises:
            CircuitBreakerOpenError: If the circuit is open
            UpstreamUnavailableError: If the call itself failed
        """
        async with self._lock:
            if not self._should_allow_request():
                reset_in = self._seconds_until_half_open()
                logger.warning(
                    f"[CIRCUIT BREAKER] Request blocked - circuit {self.circuit_name} is open "
                    f"({reset_in:.0f}s until retry)"
                )
                raise CircuitBreakerOpenError(
                    message="Circuit breaker is OPEN - payment gateway temporarily unavailable",
                    reset_time=reset_in,
                )

        try:
            result = await func(*args, **kwargs)
        except UpstreamUnavailableError as e:
            if e.is_client_error:
                await self._record_success()
            else:
                await self._record_failure(str(e))
            raise
        except Exception as e:
            logger.error(f"[CIRCUIT BREAKER] Unexpected error in {getattr(func, '__name__', func)}: {e}")
            await self._record_failure(str(e))
            raise

        await self._record_success()
        return result

    def get_status(self) -> Dict:
        """
        Get current circuit breaker status.

        Returns:
            Dictionary with circuit state and metrics
        """
        return {
            'circuit_name': self.circuit_name,
            'state': self._state.value,
            'failure_count': self._failure_count,
            'success_count': self._success_count,
            'last_failure_time': self._last_failure_time.isoformat() if self._last_failure_time else None,
            'failure_threshold': self.failure_threshold,
            'recovery_timeout': self.recovery_timeout,
        }

    def _recovery_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return (self._clock.now() - self._opened_at).total_seconds() >= self.recovery_timeout

    def _seconds_until_half_open(self) -> float:
        if self._opened_at is None:
            return 0.0
        elapsed = (self._clock.now() - self._opened_at).total_seconds()
        return max(0.0, self.recovery_timeout - elapsed)

    def _should_allow_request(self) -> bool:
        """Determine if a request should be allowed based on circuit state."""
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            if self._recovery_elapsed():
                self._transition_to_half_open()
                return True
            return False
        return True

    async def _record_success(self) -> None:
        """Record a successful API call - reset circuit to closed."""
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} recovered, closing circuit")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count += 1
            self._opened_at = None

    async def _record_failure(self, error_message: str) -> None:
        """Record a failed API call - may open circuit if threshold reached."""
        async with self._lock:
            now = self._clock.now()
            self._failure_count += 1
            self._last_failure_time = now

            if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = now
                logger.warning(
                    f"[CIRCUIT BREAKER] Circuit opened due to {self._failure_count} failures: {error_message}"
                )
            else:
                logger.debug(f"[CIRCUIT BREAKER] Recorded failure #{self._failure_count} for {self.circuit_name}")

    def _transition_to_half_open(self) -> None:
        """Transition circuit to half-open state for testing."""
        self._state = CircuitState.HALF_OPEN
        logger.info(f"[CIRCUIT BREAKER] Transitioned {self.circuit_name} to half-open")
