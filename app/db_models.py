"""SQLAlchemy ORM models backing the persistent state.

The tables themselves are created by the versioned steps in
:mod:`app.migrations`; these mappings describe the latest schema.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class SchemaMigrationRecord(Base):
    """Ledger row written for every applied schema migration."""

    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    applied_at: Mapped[datetime] = mapped_column(DateTime)


class MovieRecord(Base):
    """A movie synchronised from the metadata source."""

    __tablename__ = "movies"

    external_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    release_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    keywords: Mapped[list[str]] = mapped_column(JSON, default=list)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    synopsis: Mapped[str | None] = mapped_column(Text, nullable=True)
    mood_ruleset: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_updated_at: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

    moods: Mapped[list["MovieMoodRecord"]] = relationship(
        back_populates="movie",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class MovieMoodRecord(Base):
    """Membership of a movie in a mood bucket."""

    __tablename__ = "movie_moods"

    external_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("movies.external_id", ondelete="CASCADE"),
        primary_key=True,
    )
    bucket: Mapped[str] = mapped_column(String(64), primary_key=True)

    movie: Mapped[MovieRecord] = relationship(back_populates="moods")


class SyncStateRecord(Base):
    """Singleton bookkeeping row for the catalog sync cycle."""

    __tablename__ = "sync_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(16))
    revision: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_attempted_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_succeeded_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    records_synced: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
