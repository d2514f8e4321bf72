"""
Circuit breaker guarding calls to outbound services (mail relay)
"""
import asyncio
import functools
import time
from enum import Enum
from typing import Callable, Any
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"      # Normal operation
    OPEN = "OPEN"          # Failing fast
    HALF_OPEN = "HALF_OPEN"  # Trying to recover

@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    success_threshold: int = 1
    timeout: float = 10.0

class CircuitBreakerException(Exception):
    """Raised when circuit breaker is open"""
    pass

class CircuitBreaker:

    def __init__(self, name: str, config: CircuitBreakerConfig, clock: Callable[[], float] = time.time):
        self.name = name
        self.config = config
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0
        self.last_state_change = clock()

    def _transition(self, state: CircuitState):
        self.state = state
        self.last_state_change = self.clock()

    def _should_attempt_reset(self) -> bool:
        return (self.state == CircuitState.OPEN and
                self.clock() - self.last_failure_time >= self.config.reset_timeout)

    def _record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)
                self.failure_count = 0
                self.success_count = 0
                logger.info(f"Circuit breaker {self.name} closed after successful recovery")
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0

    def _record_failure(self):
        self.failure_count += 1
        self.last_failure_time = self.clock()

        if self.state == CircuitState.CLOSED:
            if self.failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)
                logger.warning(f"Circuit breaker {self.name} opened after {self.failure_count} failures")
        elif self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            self.success_count = 0
            logger.warning(f"Circuit breaker {self.name} re-opened during half-open state")

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection"""
        if self._should_attempt_reset():
            self._transition(CircuitState.HALF_OPEN)
            self.success_count = 0
            logger.info(f"Circuit breaker {self.name} entering half-open state")

        if self.state == CircuitState.OPEN:
            raise CircuitBreakerException(f"Circuit breaker {self.name} is open")

        try:
            if asyncio.iscoroutinefunction(func):
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
            else:
                loop = asyncio.get_running_loop()
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
                    timeout=self.config.timeout
                )

            self._record_success()
            return result

        except Exception:
            self._record_failure()
            raise

    def get_state(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
        }

MAIL_CB_CONFIG = CircuitBreakerConfig(
    failure_threshold=3,
    reset_timeout=30.0,
    success_threshold=1,
    timeout=10.0
)

mail_circuit_breaker = CircuitBreaker("mailchannels", MAIL_CB_CONFIG)

def get_all_circuit_breakers() -> dict:
    return {
        "mailchannels": mail_circuit_breaker.get_state(),
    }
