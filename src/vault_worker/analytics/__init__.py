"""
Monthly analytics snapshots.
"""

from .aggregator import (
    ANALYTICS_QUEUE,
    AnalyticsRebuilder,
    InvalidMonthError,
    apply_metric_overrides,
    apply_transaction_overrides,
    build_snapshot,
    month_bounds,
    rebuild_monthly_analytics,
)

__all__ = [
    "ANALYTICS_QUEUE",
    "AnalyticsRebuilder",
    "InvalidMonthError",
    "apply_metric_overrides",
    "apply_transaction_overrides",
    "build_snapshot",
    "month_bounds",
    "rebuild_monthly_analytics",
]
