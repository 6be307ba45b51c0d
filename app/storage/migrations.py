"""
Schema migrations with a migration log.

Applied versions are recorded in `schema_migrations` together with a checksum
of their SQL, so every file runs exactly once and in order. The runner is
invoked once at process start, before any ledger operation.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "sql"

# Migration names end up in the log row of the migration script itself.
_NAME_RE = re.compile(r"[a-z0-9_]+")


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


class MigrationRunner(Protocol):
    """Database-specific half of the migration process."""

    def ensure_migrations_table(self) -> None:
        ...

    def get_applied_migrations(self) -> Sequence[str]:
        ...

    def apply_migration(self, migration: Migration) -> None:
        """Apply a single migration and record it in the log, atomically."""
        ...


class SQLiteMigrationRunner:
    def __init__(self, connection) -> None:
        self._con = connection

    def ensure_migrations_table(self) -> None:
        self._con.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT NOT NULL PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at INTEGER NOT NULL
            )
            """
        )
        self._con.commit()

    def get_applied_migrations(self) -> Sequence[str]:
        rows = self._con.execute("SELECT version FROM schema_migrations ORDER BY version").fetchall()
        return [row["version"] for row in rows]

    def apply_migration(self, migration: Migration) -> None:
        logger.info("Applying migration: %s (%s)", migration.version, migration.name)
        # executescript() commits on its own, so the log row is wrapped into the script.
        script = (
            "BEGIN;\n"
            f"{migration.sql}\n"
            "INSERT INTO schema_migrations(version, name, checksum, applied_at) "
            f"VALUES('{migration.version}', '{migration.name}', '{migration.checksum}', {int(time.time())});\n"
            "COMMIT;"
        )
        try:
            self._con.executescript(script)
        except Exception:
            if self._con.in_transaction:
                self._con.rollback()
            raise
        logger.info("Migration %s applied successfully", migration.version)


class PostgresMigrationRunner:
    def __init__(self, connection) -> None:
        self._con = connection

    def ensure_migrations_table(self) -> None:
        with self._con.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version TEXT NOT NULL PRIMARY KEY,
                    name TEXT NOT NULL,
                    checksum TEXT NOT NULL,
                    applied_at BIGINT NOT NULL
                )
                """
            )
        self._con.commit()

    def get_applied_migrations(self) -> Sequence[str]:
        with self._con.cursor() as cur:
            cur.execute("SELECT version FROM schema_migrations ORDER BY version")
            rows = cur.fetchall()
        return [row["version"] for row in rows]

    def apply_migration(self, migration: Migration) -> None:
        logger.info("Applying migration: %s (%s)", migration.version, migration.name)
        try:
            with self._con.cursor() as cur:
                cur.execute(migration.sql)
                cur.execute(
                    """
                    INSERT INTO schema_migrations(version, name, checksum, applied_at)
                    VALUES(%s, %s, %s, %s)
                    """,
                    (migration.version, migration.name, migration.checksum, int(time.time())),
                )
            self._con.commit()
        except Exception:
            self._con.rollback()
            raise
        logger.info("Migration %s applied successfully", migration.version)


def load_migration_from_file(file_path: Path) -> Migration:
    """
    Load a migration from a SQL file named `{version}_{name}_{db_type}.sql`,
    e.g. `001_initial_schema_sqlite.sql`.
    """
    parts = file_path.stem.split("_", 1)
    if len(parts) != 2 or not parts[0].isdigit():
        raise ValueError(
            f"Invalid migration filename format: {file_path.name}. "
            f"Expected: VERSION_NAME_DBTYPE.sql (e.g., 001_initial_schema_sqlite.sql)"
        )

    version = parts[0]
    name_parts = parts[1].rsplit("_", 1)
    name = name_parts[0] if len(name_parts) == 2 else parts[1]
    if not _NAME_RE.fullmatch(name):
        raise ValueError(
            f"Invalid migration name '{name}' in {file_path.name}: only lowercase letters, digits and '_' allowed"
        )

    with open(file_path, "r", encoding="utf-8") as f:
        sql = f.read()

    return Migration(version=version, name=name, sql=sql)


def run_migrations(
    *,
    runner: MigrationRunner,
    migrations_dir: Path = MIGRATIONS_DIR,
    db_type: str = "sqlite",
) -> list[str]:
    """
    Run all pending migrations for `db_type` ('sqlite' or 'postgres') in order.

    Returns:
        Versions applied by this call.

    Raises:
        ValueError: If a migration file is malformed or an earlier version is missing
    """
    runner.ensure_migrations_table()
    applied = set(runner.get_applied_migrations())

    pattern = f"[0-9]*_{db_type}.sql"
    migration_files = sorted(migrations_dir.glob(pattern))
    if not migration_files:
        logger.info("No migration files found in %s matching pattern %s", migrations_dir, pattern)
        return []

    migrations = [load_migration_from_file(p) for p in migration_files]
    seen: set[str] = set()
    for migration in migrations:
        if migration.version in seen:
            raise ValueError(f"Duplicate migration version {migration.version} in {migrations_dir}")
        seen.add(migration.version)

    newly_applied: list[str] = []
    for migration in migrations:
        if migration.version in applied:
            logger.debug("Migration %s already applied, skipping", migration.version)
            continue

        later = [v for v in applied if v > migration.version]
        if later:
            raise ValueError(
                f"Migration {migration.version} cannot be applied: "
                f"later migration {max(later)} is already applied"
            )

        runner.apply_migration(migration)
        applied.add(migration.version)
        newly_applied.append(migration.version)

    logger.info("Schema is up to date (%d new migration(s))", len(newly_applied))
    return newly_applied
