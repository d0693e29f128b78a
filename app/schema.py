"""Schema version ledger and migration runner."""

from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import func, insert, inspect, select, text
from sqlalchemy.engine import Connection

from .database import Database
from .db_models import SchemaMigrationRecord
from .errors import IncompatibleSchemaError, MigrationError
from .migrations import MIGRATIONS, Migration
from .utils import utcnow

logger = logging.getLogger(__name__)

LEDGER_TABLE = SchemaMigrationRecord.__tablename__
LEDGER_DDL = f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    version INTEGER NOT NULL PRIMARY KEY,
    name VARCHAR(120) NOT NULL,
    applied_at DATETIME NOT NULL
)
"""


class SchemaStore:
    """Applies versioned migrations to the embedded database.

    Each pending migration runs in its own transaction together with its
    ledger row, so a failing step leaves the schema at the previous version.
    """

    def __init__(
        self,
        database: Database,
        migrations: Sequence[Migration] = MIGRATIONS,
    ):
        versions = [migration.version for migration in migrations]
        if not versions:
            raise ValueError("At least one migration is required")
        if versions[0] < 1 or any(
            later <= earlier for earlier, later in zip(versions, versions[1:])
        ):
            raise ValueError("Migration versions must be positive and strictly increasing")
        self._engine = database.engine
        self._migrations = tuple(migrations)

    @property
    def latest_version(self) -> int:
        """Highest migration version known to this release."""

        return self._migrations[-1].version

    @property
    def migrations(self) -> tuple[Migration, ...]:
        return self._migrations

    async def current_version(self) -> int:
        """Return the version recorded in the database, ``0`` when unmigrated."""

        async with self._engine.connect() as connection:
            return await connection.run_sync(self._read_version)

    async def migrate(self, target_version: int | None = None) -> list[int]:
        """Apply pending migrations up to ``target_version`` and return them."""

        target = self.latest_version if target_version is None else target_version
        if target > self.latest_version:
            raise ValueError(
                f"Unknown target schema version {target}; latest is {self.latest_version}"
            )

        current = await self.current_version()
        if current > self.latest_version:
            raise IncompatibleSchemaError(current, self.latest_version)

        pending = [
            migration
            for migration in self._migrations
            if current < migration.version <= target
        ]
        if not pending:
            logger.debug("Schema is current at version %s", current)
            return []

        applied: list[int] = []
        for migration in pending:
            logger.info(
                "Applying schema migration %s (%s)", migration.version, migration.name
            )
            try:
                async with self._engine.begin() as connection:
                    await connection.run_sync(self._apply, migration)
            except Exception as exc:
                logger.error(
                    "Schema migration %s (%s) failed and was rolled back: %s",
                    migration.version,
                    migration.name,
                    exc,
                )
                raise MigrationError(migration.version, exc) from exc
            applied.append(migration.version)

        logger.info("Schema migrated to version %s", applied[-1])
        return applied

    @staticmethod
    def _read_version(connection: Connection) -> int:
        if not inspect(connection).has_table(LEDGER_TABLE):
            return 0
        value = connection.execute(
            select(func.max(SchemaMigrationRecord.version))
        ).scalar()
        return int(value or 0)

    @staticmethod
    def _apply(connection: Connection, migration: Migration) -> None:
        connection.execute(text(LEDGER_DDL))
        migration.apply(connection)
        connection.execute(
            insert(SchemaMigrationRecord).values(
                version=migration.version,
                name=migration.name,
                applied_at=utcnow(),
            )
        )
