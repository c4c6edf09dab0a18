"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Outbox queue jobs
- Pipeline jobs and their steps
- Document insights, overrides and monthly analytics
- Canonical accounts
- Dead letters

The store is the only shared mutable resource between worker loops.
"""

from .sqlite_store import (
    AccountRecord,
    AnalyticsSnapshotRecord,
    DeadLetterRecord,
    OutboxJob,
    OutboxState,
    StateStore,
    UserOverrideRecord,
    format_ts,
    parse_ts,
    utc_now,
)

__all__ = [
    "StateStore",
    "AccountRecord",
    "AnalyticsSnapshotRecord",
    "DeadLetterRecord",
    "OutboxJob",
    "OutboxState",
    "UserOverrideRecord",
    "format_ts",
    "parse_ts",
    "utc_now",
]
