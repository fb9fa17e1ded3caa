import asyncio
from enum import Enum
from typing import Callable, Any, Optional, Tuple, Type
from datetime import datetime, timedelta
import structlog

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Circuit breaker specific error"""
    pass


class CircuitBreaker:
    """Circuit breaker guarding calls to the payment gateway"""

    def __init__(self,
                 name: str,
                 failure_threshold: int = 5,
                 recovery_timeout: timedelta = timedelta(seconds=30),
                 expected_exceptions: Tuple[Type[BaseException], ...] = (Exception,)):
        """
        Args:
            name: Label used in logs and health output
            failure_threshold: Consecutive failures before the circuit opens
            recovery_timeout: Time to wait before letting a probe call through
            expected_exceptions: Exception types that count as failures
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exceptions = expected_exceptions

        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.state = CircuitState.CLOSED

    def _should_attempt_reset(self) -> bool:
        if self.state != CircuitState.OPEN or not self.last_failure_time:
            return False
        return datetime.now() - self.last_failure_time >= self.recovery_timeout

    def _on_success(self):
        self.failure_count = 0
        self.last_failure_time = None

        if self.state != CircuitState.CLOSED:
            logger.info("Circuit breaker closed after successful call", breaker=self.name)
            self.state = CircuitState.CLOSED

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = datetime.now()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning("Circuit breaker opened",
                               breaker=self.name,
                               failure_count=self.failure_count,
                               threshold=self.failure_threshold)
            self.state = CircuitState.OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute func under circuit breaker protection"""
        if self._should_attempt_reset():
            logger.info("Circuit breaker attempting half-open state", breaker=self.name)
            self.state = CircuitState.HALF_OPEN

        if self.state == CircuitState.OPEN:
            raise CircuitBreakerError(f"Circuit breaker {self.name} is OPEN")

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.expected_exceptions:
            self._on_failure()
            raise

        self._on_success()
        return result

    def reset(self):
        self.failure_count = 0
        self.last_failure_time = None
        self.state = CircuitState.CLOSED

    def get_state(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "recovery_timeout_seconds": self.recovery_timeout.total_seconds()
        }
