"""
Backfill Client - Interface to the market data source.

The market connectivity layer implements BackfillClient. The store only
calls it through ``call_with_retry`` so transient failures are retried
with bounded, logged backoff.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, TypeVar

from ..core.constants import (
    BACKFILL_MAX_ATTEMPTS,
    BACKFILL_BASE_DELAY_SECONDS,
    BACKFILL_MAX_DELAY_SECONDS,
)
from ..core.exceptions import SourceUnavailableError
from ..core.types import Tick

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (SourceUnavailableError, ConnectionError, TimeoutError, OSError)


class BackfillClient(ABC):
    """
    Source of historical and live ticks.

    Implementations must be safe to call repeatedly. Transient failures
    should raise SourceUnavailableError (or a builtin connection error).
    """

    @abstractmethod
    def get_ticker(self, symbol: str) -> Optional[Tick]:
        """Current tick for ``symbol``, or None if the source has none."""

    @abstractmethod
    def get_historical(self, symbol: str, start: int, end: int) -> Iterable[Tick]:
        """Finite sequence of ticks with start <= time < end, ordered by time."""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the first retry in seconds
        max_delay: Upper bound for a single delay
    """
    max_attempts: int = BACKFILL_MAX_ATTEMPTS
    base_delay: float = BACKFILL_BASE_DELAY_SECONDS
    max_delay: float = BACKFILL_MAX_DELAY_SECONDS

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def call_with_retry(
    func: Callable[..., T],
    *args,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "backfill request",
    **kwargs
) -> T:
    """
    Call ``func`` retrying transient source failures.

    Args:
        func: Callable to invoke
        policy: Retry bounds
        sleep: Sleep function (injectable for tests)
        description: Human readable label for log lines

    Returns:
        Whatever ``func`` returns

    Raises:
        SourceUnavailableError: After ``policy.max_attempts`` failures
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            last_error = e
            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s - retrying in %.1fs",
                    description, attempt, policy.max_attempts, e, delay
                )
                sleep(delay)
            else:
                logger.error(
                    "%s failed (attempt %d/%d): %s - giving up",
                    description, attempt, policy.max_attempts, e
                )

    raise SourceUnavailableError(
        f"{description} failed after {policy.max_attempts} attempts",
        last_error=str(last_error)
    )
