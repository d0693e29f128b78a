"""Versioned schema migrations applied by :class:`app.schema.SchemaStore`.

Every step is idempotent so that a database whose tables exist but whose
ledger was lost is repaired rather than rejected. Steps never change once
released; later schema changes get a new version.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import DateTime, bindparam, inspect, text
from sqlalchemy.engine import Connection

from .utils import utcnow


@dataclass(frozen=True)
class Migration:
    """A single forward-only schema step."""

    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_column(connection: Connection, table: str, name: str, ddl: str, init_sql: str | None = None) -> None:
    existing_columns = {column["name"] for column in inspect(connection).get_columns(table)}
    if name in existing_columns:
        return
    connection.execute(text(ddl))
    if init_sql:
        connection.execute(text(init_sql))


def _create_movies(connection: Connection) -> None:
    connection.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS movies (
                external_id VARCHAR(128) NOT NULL PRIMARY KEY,
                title VARCHAR(255) NOT NULL,
                release_year INTEGER,
                genres JSON NOT NULL DEFAULT '[]',
                rating FLOAT,
                synopsis TEXT,
                source_updated_at DATETIME NOT NULL,
                created_at DATETIME NOT NULL,
                updated_at DATETIME NOT NULL
            )
            """
        )
    )
    connection.execute(
        text("CREATE INDEX IF NOT EXISTS ix_movies_title ON movies (title)")
    )


def _create_sync_state(connection: Connection) -> None:
    connection.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS sync_state (
                id INTEGER NOT NULL PRIMARY KEY CHECK (id = 1),
                status VARCHAR(16) NOT NULL,
                revision VARCHAR(255),
                last_attempted_at DATETIME,
                last_succeeded_at DATETIME,
                last_error TEXT,
                records_synced INTEGER NOT NULL DEFAULT 0,
                updated_at DATETIME NOT NULL
            )
            """
        )
    )
    connection.execute(
        text(
            "INSERT OR IGNORE INTO sync_state (id, status, records_synced, updated_at) "
            "VALUES (1, 'idle', 0, :now)"
        ).bindparams(bindparam("now", value=utcnow(), type_=DateTime()))
    )


def _create_movie_moods(connection: Connection) -> None:
    connection.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS movie_moods (
                external_id VARCHAR(128) NOT NULL
                    REFERENCES movies (external_id) ON DELETE CASCADE,
                bucket VARCHAR(64) NOT NULL,
                PRIMARY KEY (external_id, bucket)
            )
            """
        )
    )
    connection.execute(
        text("CREATE INDEX IF NOT EXISTS ix_movie_moods_bucket ON movie_moods (bucket)")
    )
    _ensure_column(
        connection,
        "movies",
        "keywords",
        "ALTER TABLE movies ADD COLUMN keywords JSON DEFAULT '[]'",
        "UPDATE movies SET keywords = '[]' WHERE keywords IS NULL",
    )
    _ensure_column(
        connection,
        "movies",
        "mood_ruleset",
        "ALTER TABLE movies ADD COLUMN mood_ruleset INTEGER",
    )


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "create_movies", _create_movies),
    Migration(2, "create_sync_state", _create_sync_state),
    Migration(3, "create_movie_moods", _create_movie_moods),
)

LATEST_SCHEMA_VERSION = MIGRATIONS[-1].version
