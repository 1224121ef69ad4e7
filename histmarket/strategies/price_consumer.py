"""
Price Consumer - Boundary between the store and trading logic.

The poll loop hands one derived bucket per tick to a PriceConsumer.
Consumers decide for themselves how to treat provisional buckets.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type

from ..core.exceptions import InvalidConfigError
from ..core.types import IntervalBucket


class PriceConsumer(ABC):
    """
    Abstract base class for everything fed by the poll loop.

    Subclasses must implement:
    - process_new_price()
    - get_name()
    """

    def __init__(self, symbol: str, config: Optional[Dict[str, Any]] = None):
        """
        Initialize consumer.

        Args:
            symbol: Symbol being traded
            config: Trader setting for this symbol/strategy pair
        """
        self.symbol = symbol
        self.config = config or {}

        from ..monitoring.logger import get_logger
        self.logger = get_logger(f"consumer.{self.get_name()}")

    @abstractmethod
    def process_new_price(self, bucket: IntervalBucket) -> None:
        """
        Handle the latest bucket of the consumer level.

        Args:
            bucket: Possibly provisional bucket containing the newest tick
        """

    @abstractmethod
    def get_name(self) -> str:
        """Return consumer name."""


class LoggingPriceConsumer(PriceConsumer):
    """Logs every price it receives; used when no strategy is plugged in."""

    def __init__(self, symbol: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(symbol, config)
        self.last_bucket: Optional[IntervalBucket] = None
        self.received = 0

    def process_new_price(self, bucket: IntervalBucket) -> None:
        self.last_bucket = bucket
        self.received += 1
        self.logger.info(
            "Current price",
            symbol=self.symbol,
            level=bucket.level,
            price=bucket.price,
            high=bucket.high,
            low=bucket.low,
            provisional=bucket.provisional
        )

    def get_name(self) -> str:
        return "log"


_CONSUMERS: Dict[str, Type[PriceConsumer]] = {
    "log": LoggingPriceConsumer,
}


def register_consumer(name: str, consumer_cls: Type[PriceConsumer]) -> None:
    """Make a consumer available under a strategy name."""
    _CONSUMERS[name] = consumer_cls


def create_consumer(strategy_name: str, symbol: str, config: Optional[Dict[str, Any]] = None) -> PriceConsumer:
    """
    Instantiate the consumer registered for ``strategy_name``.

    Raises:
        InvalidConfigError: If no consumer is registered under that name
    """
    if strategy_name not in _CONSUMERS:
        raise InvalidConfigError(
            "Unknown strategy",
            strategy=strategy_name,
            available=sorted(_CONSUMERS)
        )
    return _CONSUMERS[strategy_name](symbol, config)
