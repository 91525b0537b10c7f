"""
RiftSettle - Retry Logic with Exponential Backoff

Retry utilities for the settlement core's external calls:
- Chain RPC reads (balances, signature statuses, trade history)
- Custody gateway requests
- USD price lookups
- Backoff schedule for queued treasury audit rows

Features:
- Exponential backoff with jitter
- Circuit breakers shared by name across clients
- Configuration from environment variables

Transfers are never retried blindly: a resend after an ambiguous failure
could pay twice. The claim state machine handles that case through
transfer references instead.

Usage:
    from retry import retry_with_backoff, RetryConfig

    @retry_with_backoff(max_retries=3, base_delay=0.5, circuit_breaker_name="chain_rpc")
    def get_balance(address):
        return rpc.call("getBalance", [address])

    result = retry_call(fetch_price, args=("SOL",), config=RetryConfig.from_env())

Environment Variables:
    RETRY_MAX_ATTEMPTS=3
    RETRY_BASE_DELAY=1.0
    RETRY_MAX_DELAY=60.0
    RETRY_EXPONENTIAL_BASE=2.0
    RETRY_JITTER=0.1
"""

import logging
import os
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base class for errors that should trigger a retry."""
    pass


class NonRetryableError(Exception):
    """Base class for errors that should NOT trigger a retry."""
    pass


class CircuitOpenError(ConnectionError):
    """Raised instead of calling a dependency whose circuit is open."""

    def __init__(self, name: str):
        super().__init__(f"Circuit breaker {name} is open")
        self.name = name


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation, requests allowed
    OPEN = "open"          # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


DEFAULT_RETRYABLE = (ConnectionError, TimeoutError, OSError)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    max_delay: float = 60.0

    base_delay: float = 1.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    retryable_exceptions: tuple = DEFAULT_RETRYABLE
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: float = 30.0

    log_level: int = logging.WARNING

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """Create configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("RETRY_BASE_DELAY", "1.0")),
            max_delay=float(os.getenv("RETRY_MAX_DELAY", "60.0")),
            exponential_base=float(os.getenv("RETRY_EXPONENTIAL_BASE", "2.0")),
            jitter=float(os.getenv("RETRY_JITTER", "0.1")),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (0-indexed)."""
        return calculate_delay(
            attempt, self.base_delay, self.exponential_base, self.max_delay, self.jitter
        )


class CircuitBreaker:
    """
    Circuit breaker pattern implementation.

    Stops hammering the RPC node or custody gateway while it is failing;
    after ``recovery_timeout`` one trial request is let through.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._clock() - self._last_failure_time >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")

            return self._state

    def is_allowed(self) -> bool:
        """Check if requests are allowed."""
        return self.state != CircuitState.OPEN

    def record_success(self):
        """Record a successful request."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED (recovered)")
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self):
        """Record a failed request."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (still failing)")

            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    self._state = CircuitState.OPEN
                    logger.warning(
                        f"Circuit {self.name}: CLOSED -> OPEN "
                        f"(failures: {self._failure_count})"
                    )

    def reset(self):
        """Reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
        }


# Global circuit breakers by name
_circuit_breakers: dict[str, CircuitBreaker] = {}
_circuit_breakers_lock = threading.Lock()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create a circuit breaker by name."""
    with _circuit_breakers_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
        return _circuit_breakers[name]


def get_circuit_states() -> dict[str, dict[str, Any]]:
    """Snapshot of every registered circuit breaker (health endpoint)."""
    with _circuit_breakers_lock:
        breakers = list(_circuit_breakers.values())
    return {b.name: b.to_dict() for b in breakers}


def reset_circuit_breakers() -> None:
    """Forget all circuit breakers (useful for testing)."""
    with _circuit_breakers_lock:
        _circuit_breakers.clear()


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        exponential_base: Multiplier for exponential growth
        max_delay: Maximum delay cap
        jitter: Random jitter factor (0.0 to 1.0)

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    if jitter > 0:
        delay += delay * jitter * (2 * random.random() - 1)

    return max(0, delay)


def is_retryable_exception(
    exception: Exception,
    retryable_types: tuple[type[Exception], ...]
) -> bool:
    """Check if an exception should trigger a retry."""
    if isinstance(exception, (NonRetryableError, CircuitOpenError)):
        return False
    if isinstance(exception, RetryableError):
        return True
    return isinstance(exception, retryable_types)


def is_retryable_status_code(status_code: int, retryable_codes: tuple[int, ...]) -> bool:
    """Check if an HTTP status code should trigger a retry."""
    return status_code in retryable_codes


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    circuit_breaker_name: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Execute a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments
        kwargs: Keyword arguments
        config: Retry configuration
        circuit_breaker_name: Optional circuit breaker name
        sleep: Delay function (injectable for tests)

    Returns:
        Result of the function call

    Raises:
        CircuitOpenError: If the named circuit is open
        Exception: The last error once retries are exhausted, or the first
            non-retryable error
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}
    name = getattr(func, "__name__", "call")

    circuit = None
    if circuit_breaker_name:
        circuit = get_circuit_breaker(
            circuit_breaker_name,
            failure_threshold=config.circuit_breaker_threshold,
            recovery_timeout=config.circuit_breaker_timeout,
        )

    for attempt in range(config.max_retries + 1):
        if circuit and not circuit.is_allowed():
            raise CircuitOpenError(circuit_breaker_name)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_exception(e, config.retryable_exceptions):
                logger.log(config.log_level, f"Non-retryable error in {name}: {e}")
                raise

            if circuit:
                circuit.record_failure()

            if attempt >= config.max_retries:
                logger.error(f"Max retries ({config.max_retries}) exceeded for {name}: {e}")
                raise

            delay = config.delay_for(attempt)
            logger.log(
                config.log_level,
                f"Retry {attempt + 1}/{config.max_retries} for {name} "
                f"after {delay:.2f}s delay: {e}",
            )
            sleep(delay)
            continue

        if circuit:
            circuit.record_success()
        return result

    raise RuntimeError("unreachable")


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: float = 0.1,
    retryable_exceptions: tuple = DEFAULT_RETRYABLE,
    circuit_breaker_name: str | None = None,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries
        exponential_base: Base for exponential backoff calculation
        jitter: Random jitter factor (0.0 to 1.0)
        retryable_exceptions: Tuple of exception types to retry
        circuit_breaker_name: Optional circuit breaker name
    """
    config = RetryConfig(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
        retryable_exceptions=retryable_exceptions,
    )

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return retry_call(
                func,
                args=args,
                kwargs=kwargs,
                config=config,
                circuit_breaker_name=circuit_breaker_name,
            )

        return wrapper
    return decorator

