"""Historical market store: RAW ticks, derived intervals, gap repair and persistence."""

__version__ = "0.1.0"
