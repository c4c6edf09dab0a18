"""
Migration 003: Add merchant_categories table.

Categories users have taught by correcting a transaction, keyed by a hash
of the merchant description so later statements pick them up. Only a
masked description sample is stored.
"""

import sqlite3

VERSION = 3
NAME = "merchant_categories"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the merchant_categories table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS merchant_categories (
            user_id TEXT NOT NULL,
            merchant_hash TEXT NOT NULL,
            category TEXT NOT NULL,

            -- Masked, truncated description for support
            description_sample TEXT,
            last_amount REAL,
            last_direction TEXT,

            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, merchant_hash)
        )
    """)

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the merchant_categories table."""
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS merchant_categories")
    conn.commit()
