"""
Resilience - Retry transient compile failures with exponential backoff

A compile job whose engine process died from a signal or hit resource
exhaustion is worth another attempt; a unit with bad markup fails the same
way every time and is never retried.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """How often, and on which exceptions, a compile attempt is repeated."""
    max_attempts: int = 2  # total attempts, first one included
    base_delay: float = 0.5
    max_delay: float = 10.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)


def backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after failed attempt ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    return min(config.base_delay * (2 ** (attempt - 1)), config.max_delay)


def retry_call(
    func: Callable[..., T],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any,
) -> T:
    """
    Call ``func(*args, **kwargs)``, repeating it on ``config.retry_on``.

    Exceptions outside ``retry_on`` propagate at once; the last retryable
    exception propagates when attempts run out.
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))
    attempts = max(1, config.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except config.retry_on as e:
            if attempt == attempts:
                logger.warning(f"{name}: giving up after {attempts} attempts ({e})")
                raise
            delay = backoff_delay(attempt, config)
            logger.info(f"{name}: attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.2f}s")
            time.sleep(delay)
