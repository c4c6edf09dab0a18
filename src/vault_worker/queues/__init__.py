"""
Outbox queue drivers and background tickers.
"""

from .outbox import (
    InMemoryQueueDriver,
    QueueDriver,
    QueueError,
    SQLiteOutboxDriver,
    backoff_seconds,
    create_queue_driver,
)
from .scheduler import Ticker

__all__ = [
    "QueueDriver",
    "SQLiteOutboxDriver",
    "InMemoryQueueDriver",
    "QueueError",
    "backoff_seconds",
    "create_queue_driver",
    "Ticker",
]
