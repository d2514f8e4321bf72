"""
Retry utilities for handling transient failures
"""
import asyncio
import random
from typing import Callable, Any, Optional, List
import logging

from common.error_handling import (
    StoreTransient, GatewayUnreachable, AccountNotFound, OrderNotFound,
)
from common.settings import settings

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None,
        non_retryable_exceptions: Optional[List[type]] = None,
        sleep: Callable = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [Exception]
        self.non_retryable_exceptions = non_retryable_exceptions or []
        self.sleep = sleep or asyncio.sleep

    def is_retryable(self, error: Exception) -> bool:
        if any(isinstance(error, exc_type) for exc_type in self.non_retryable_exceptions):
            return False
        return any(isinstance(error, exc_type) for exc_type in self.retryable_exceptions)

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with optional jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)

    return delay

async def retry_async(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Async retry wrapper with exponential backoff"""
    last_exception = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(1, config.max_attempts + 1):
        try:
            if asyncio.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            else:
                return func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not config.is_retryable(e):
                logger.warning(f"Non-retryable exception in {name}: {e}")
                raise

            if attempt == config.max_attempts:
                logger.error(f"Max retry attempts ({config.max_attempts}) reached for {name}")
                break

            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {name}: {e}. Retrying in {delay:.2f}s")
            await config.sleep(delay)

    raise last_exception

# Delays run 0.2s, 0.4s, 0.8s ... capped at 5s
RECHARGE_RETRY_CONFIG = RetryConfig(
    max_attempts=settings.recharge_max_attempts,
    base_delay=settings.recharge_base_delay,
    max_delay=settings.recharge_max_delay,
    jitter=False,
    retryable_exceptions=[StoreTransient],
    non_retryable_exceptions=[AccountNotFound, OrderNotFound],
)

MAIL_RETRY_CONFIG = RetryConfig(
    max_attempts=2,
    base_delay=0.5,
    max_delay=2.0,
    retryable_exceptions=[GatewayUnreachable],
)
