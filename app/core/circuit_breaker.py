"""
Circuit Breaker Pattern Implementation

Protects calls to mints, BTCPay, commerce platforms, rate providers and
notification gateways so one failing collaborator cannot stall every webhook.
"""
import asyncio
import threading
import time
from enum import Enum
from typing import Callable, TypeVar, ParamSpec
from dataclasses import dataclass

from app.core.logging import get_logger
from app.core.exceptions import CashuPaymentError, CircuitBreakerOpenError

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation, requests pass through
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5         # Failures before opening
    success_threshold: int = 2          # Successes in half-open to close
    timeout_seconds: float = 30.0       # Time before trying half-open
    half_open_max_calls: int = 3        # Max calls in half-open state
    # חריגות שמעידות על בקשה שגויה ולא על שירות תקול - לא נספרות ככשל
    ignored_exceptions: tuple[type[BaseException], ...] = ()


@dataclass
class CircuitBreakerState:
    """State tracking for circuit breaker"""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    half_open_calls: int = 0


class CircuitBreaker:
    """
    Circuit breaker for external service protection.

    States:
    - CLOSED: Normal operation, tracking failures
    - OPEN: Service is failing, block all requests
    - HALF_OPEN: Testing if service recovered
    """

    # singleton per service name, e.g. "cashu-mint:https://mint.example"
    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitBreakerState()
        # threading.Lock ולא asyncio.Lock - משימות Celery רצות כל אחת ב-event loop משלה
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        """Get or create circuit breaker instance for a service"""
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Reset all circuit breakers (for testing)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def is_closed(self) -> bool:
        return self._state.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state.state == CircuitState.HALF_OPEN

    def _should_attempt_reset(self) -> bool:
        if self._state.state != CircuitState.OPEN:
            return False
        return time.time() - self._state.last_failure_time >= self.config.timeout_seconds

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state. Caller holds ``self._lock``."""
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.HALF_OPEN:
            self._state.half_open_calls = 0
            self._state.success_count = 0

        if new_state == CircuitState.CLOSED:
            self._state.failure_count = 0
            self._state.success_count = 0

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value
            }
        )

    async def record_success(self) -> None:
        """Record a successful call"""
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state.state == CircuitState.CLOSED:
                self._state.failure_count = 0

    async def record_failure(self, error: Exception | None = None) -> None:
        """Record a failed call"""
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = time.time()

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None
                }
            )

            if self._state.state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self._state.failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    async def can_execute(self) -> bool:
        """Check if a request can be executed"""
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True

            if self._state.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._transition_to(CircuitState.HALF_OPEN)
                    return True
                return False

            if self._state.half_open_calls < self.config.half_open_max_calls:
                self._state.half_open_calls += 1
                return True
            return False

    def get_retry_after(self) -> float:
        """Get seconds until circuit might close"""
        if self._state.state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.timeout_seconds - (time.time() - self._state.last_failure_time)
        return max(0.0, remaining)

    async def execute(
        self,
        func: Callable[P, T],
        *args: P.args,
        **kwargs: P.kwargs
    ) -> T:
        """
        Execute a function with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If circuit is open. Nothing was sent.
        """
        if not await self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.config.ignored_exceptions:
            await self.record_success()
            raise
        except Exception as e:
            await self.record_failure(e)
            raise

        await self.record_success()
        return result


# Pre-configured circuit breakers for the collaborators
_HTTP_SERVICE_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    success_threshold=2,
    timeout_seconds=30.0
)


def get_mint_circuit_breaker(mint_url: str) -> CircuitBreaker:
    """Per-mint circuit breaker; a mint's 4xx answers do not trip it"""
    return CircuitBreaker.get_instance(
        f"cashu-mint:{mint_url}",
        CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=1,
            timeout_seconds=60.0,
            ignored_exceptions=(CashuPaymentError,)
        )
    )


def get_rate_provider_circuit_breaker(provider_name: str) -> CircuitBreaker:
    return CircuitBreaker.get_instance(f"rate-provider:{provider_name}", _HTTP_SERVICE_CONFIG)


def get_btcpay_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker.get_instance("btcpay", _HTTP_SERVICE_CONFIG)


def get_shopify_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker.get_instance("shopify", _HTTP_SERVICE_CONFIG)


def get_square_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker.get_instance("square", _HTTP_SERVICE_CONFIG)


def get_email_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker.get_instance("email", _HTTP_SERVICE_CONFIG)


def get_sms_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker.get_instance("sms", _HTTP_SERVICE_CONFIG)
