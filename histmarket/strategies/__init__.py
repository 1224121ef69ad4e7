"""Price consumers fed by the poll loop."""

from .price_consumer import PriceConsumer, LoggingPriceConsumer, create_consumer, register_consumer

__all__ = [
    "PriceConsumer",
    "LoggingPriceConsumer",
    "create_consumer",
    "register_consumer",
]
