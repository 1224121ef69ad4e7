"""Market source connectors."""

from .backfill_client import BackfillClient, RetryPolicy, call_with_retry
from .replay_client import ReplayBackfillClient

__all__ = [
    "BackfillClient",
    "RetryPolicy",
    "call_with_retry",
    "ReplayBackfillClient",
]
