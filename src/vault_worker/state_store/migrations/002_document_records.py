"""
Migration 002: Add document_records table.

Holds the normalized record of each processed document next to its
integrity outcome and the alias that supplied every canonical field.
Raw identifiers never reach this table; only masked forms and hashes do.
"""

import sqlite3

VERSION = 2
NAME = "document_records"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the document_records table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS document_records (
            document_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,

            -- payslip | statement | hmrc
            document_type TEXT NOT NULL,

            -- Canonical payload and checks (JSON)
            normalized_json TEXT NOT NULL,
            integrity_json TEXT NOT NULL,
            pii_json TEXT NOT NULL,
            sources_json TEXT NOT NULL,

            docupipe_document_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_document_records_user
        ON document_records (user_id)
    """)

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the document_records table."""
    cursor = conn.cursor()
    cursor.execute("DROP INDEX IF EXISTS idx_document_records_user")
    cursor.execute("DROP TABLE IF EXISTS document_records")
    conn.commit()
