"""
Migration 001: Add heartbeat column to pipeline_jobs.

Every step update refreshes heartbeat_at. A job left in_progress without a
heartbeat for longer than the stale-claim window can be claimed again by
another worker.
"""

import sqlite3

VERSION = 1
NAME = "pipeline_heartbeat"


def upgrade(conn: sqlite3.Connection) -> None:
    """Add heartbeat_at column and the stale-claim index."""
    cursor = conn.execute("PRAGMA table_info(pipeline_jobs)")
    columns = [row[1] for row in cursor.fetchall()]

    if "heartbeat_at" not in columns:
        conn.execute("ALTER TABLE pipeline_jobs ADD COLUMN heartbeat_at TEXT")
        conn.execute(
            "UPDATE pipeline_jobs SET heartbeat_at = updated_at WHERE status = 'in_progress'"
        )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_pipeline_heartbeat
        ON pipeline_jobs (status, heartbeat_at)
        WHERE status = 'in_progress'
    """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the stale-claim index.

    Note: the column is left in place; older SQLite versions cannot drop
    columns without rebuilding the table.
    """
    conn.execute("DROP INDEX IF EXISTS idx_pipeline_heartbeat")
