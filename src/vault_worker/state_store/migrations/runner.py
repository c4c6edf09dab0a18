"""
Migration runner for versioned database schema changes.

Migration modules live next to this file and are named {version}_{name}.py,
e.g. 001_pipeline_heartbeat.py. Each module defines VERSION, NAME,
upgrade(conn) and optionally downgrade(conn).
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATION_PACKAGE = "vault_worker.state_store.migrations"


@dataclass
class Migration:
    """A single schema migration."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


def get_all_migrations() -> list[Migration]:
    """Discover migration modules, ordered by version.

    A module that fails to import is a broken deployment, so the error
    propagates instead of silently skipping a schema change.
    """
    found = []
    for path in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{MIGRATION_PACKAGE}.{path.stem}")
        found.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )
    return sorted(found, key=lambda m: m.version)


class MigrationRunner:
    """Applies pending migrations and records them in a `migrations` table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def applied_versions(self) -> set[int]:
        rows = self.conn.execute("SELECT version FROM migrations").fetchall()
        return {row[0] for row in rows}

    def current_version(self) -> int:
        versions = self.applied_versions()
        return max(versions) if versions else 0

    def pending(self) -> list[Migration]:
        applied = self.applied_versions()
        return [m for m in get_all_migrations() if m.version not in applied]

    def apply(self, migration: Migration) -> None:
        logger.info(f"Applying migration {migration.version:03d} ({migration.name})")
        try:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (
                    migration.version,
                    migration.name,
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Migration {migration.version:03d} failed: {e}")
            raise

    def revert(self, migration: Migration) -> None:
        if migration.downgrade is None:
            raise NotImplementedError(
                f"Migration {migration.version:03d} ({migration.name}) cannot be reverted"
            )
        logger.info(f"Reverting migration {migration.version:03d} ({migration.name})")
        try:
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Reverting migration {migration.version:03d} failed: {e}")
            raise

    def run_pending(self) -> list[int]:
        """Apply every pending migration in order; returns the applied versions."""
        applied = []
        for migration in self.pending():
            self.apply(migration)
            applied.append(migration.version)
        if applied:
            logger.info(f"Applied migrations: {applied}")
        else:
            logger.debug("Schema up to date")
        return applied

    def revert_to(self, target_version: int) -> list[int]:
        """Revert applied migrations above target_version, newest first."""
        by_version = {m.version: m for m in get_all_migrations()}
        reverted = []
        for version in sorted(self.applied_versions(), reverse=True):
            if version <= target_version:
                break
            self.revert(by_version[version])
            reverted.append(version)
        return reverted
