"""Durable movie catalog keyed by the source's external identifier."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Callable

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import MovieMoodRecord, MovieRecord
from .models import Movie
from .moods import BUCKET_NAMES, RULESET_VERSION, classify, find_bucket
from .utils import utcnow

logger = logging.getLogger(__name__)

Classifier = Callable[[Movie], frozenset[str]]


class UpsertOutcome(str, Enum):
    """What an upsert did to the stored row."""

    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"


class CatalogStore:
    """Persists movies and their mood labels.

    Each upsert commits the movie and its labels in one transaction, so readers
    never observe a movie without its classification.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        classifier: Classifier = classify,
        ruleset_version: int = RULESET_VERSION,
        bucket_names: tuple[str, ...] = BUCKET_NAMES,
    ):
        self._session_factory = session_factory
        self._classify = classifier
        self._ruleset_version = ruleset_version
        self._bucket_names = bucket_names
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def upsert(self, movie: Movie) -> UpsertOutcome:
        """Insert or update ``movie``; older replays never overwrite newer rows."""

        async with self._id_lock(movie.external_id):
            async with self._session_factory() as session:
                async with session.begin():
                    record = await session.get(MovieRecord, movie.external_id)
                    if record is None:
                        session.add(self._new_record(movie))
                        return UpsertOutcome.INSERTED
                    return self._merge(record, movie)

    async def get(self, external_id: str) -> Movie | None:
        async with self._session_factory() as session:
            record = await session.get(MovieRecord, external_id)
            if record is None:
                return None
            return self._to_movie(record)

    async def count(self) -> int:
        """Number of distinct movies stored."""

        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(MovieRecord))
            return int(result.scalar_one())

    async def list_all(self, *, batch_size: int = 200) -> AsyncIterator[Movie]:
        """Yield every movie ordered by external ID.

        Rows are fetched in keyset pages so iteration holds no long-lived
        transaction; calling it again starts over.
        """

        last_id: str | None = None
        while True:
            stmt = select(MovieRecord).order_by(MovieRecord.external_id).limit(batch_size)
            if last_id is not None:
                stmt = stmt.where(MovieRecord.external_id > last_id)
            async with self._session_factory() as session:
                records = (await session.scalars(stmt)).all()
                movies = [self._to_movie(record) for record in records]
            if not movies:
                return
            for movie in movies:
                yield movie
            last_id = movies[-1].external_id

    async def list_page(
        self, *, offset: int = 0, limit: int | None = None
    ) -> tuple[list[Movie], int]:
        """Return a title-sorted page and the catalog size read in one transaction."""

        async with self._session_factory() as session:
            async with session.begin():
                records = (await session.scalars(self._page_query(offset, limit))).all()
                total = await session.scalar(select(func.count()).select_from(MovieRecord))
                return [self._to_movie(record) for record in records], int(total or 0)

    async def by_mood_bucket(self, name: str) -> list[Movie]:
        """Return the members of a mood bucket; unknown buckets raise ``KeyError``."""

        bucket = find_bucket(name)
        if bucket is None or bucket.name not in self._bucket_names:
            raise KeyError(f"Unknown mood bucket {name}")
        stmt = (
            select(MovieRecord)
            .join(MovieMoodRecord)
            .where(MovieMoodRecord.bucket == bucket.name)
            .order_by(MovieRecord.title, MovieRecord.external_id)
        )
        async with self._session_factory() as session:
            records = (await session.scalars(stmt)).all()
            return [self._to_movie(record) for record in records]

    async def mood_counts(self) -> dict[str, int]:
        """Member counts for every declared bucket, including empty ones."""

        counts = {name: 0 for name in self._bucket_names}
        stmt = select(MovieMoodRecord.bucket, func.count()).group_by(MovieMoodRecord.bucket)
        async with self._session_factory() as session:
            for bucket, total in (await session.execute(stmt)).all():
                if bucket in counts:
                    counts[bucket] = int(total)
                else:
                    logger.warning("Ignoring %s rows labelled with unknown bucket %s", total, bucket)
        return counts

    async def reclassify_outdated(self, *, batch_size: int = 200) -> int:
        """Relabel movies classified by an older ruleset; return how many."""

        total = 0
        while True:
            async with self._session_factory() as session:
                async with session.begin():
                    stmt = (
                        select(MovieRecord)
                        .where(
                            or_(
                                MovieRecord.mood_ruleset.is_(None),
                                MovieRecord.mood_ruleset != self._ruleset_version,
                            )
                        )
                        .limit(batch_size)
                    )
                    records = (await session.scalars(stmt)).all()
                    for record in records:
                        self._apply_labels(record, self._classify(self._to_movie(record)))
            total += len(records)
            if len(records) < batch_size:
                break
        if total:
            logger.info(
                "Reclassified %s movies for mood ruleset %s", total, self._ruleset_version
            )
        return total

    @asynccontextmanager
    async def _id_lock(self, external_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(external_id, asyncio.Lock())
        self._lock_users[external_id] = self._lock_users.get(external_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[external_id] - 1
            if remaining:
                self._lock_users[external_id] = remaining
            else:
                del self._lock_users[external_id]
                del self._locks[external_id]

    @staticmethod
    def _page_query(offset: int, limit: int | None):
        stmt = (
            select(MovieRecord)
            .order_by(MovieRecord.title, MovieRecord.external_id)
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return stmt

    def _new_record(self, movie: Movie) -> MovieRecord:
        now = utcnow()
        record = MovieRecord(
            external_id=movie.external_id,
            created_at=now,
            updated_at=now,
            moods=[],
        )
        self._copy_fields(record, movie)
        self._apply_labels(record, self._classify(movie))
        return record

    def _merge(self, record: MovieRecord, movie: Movie) -> UpsertOutcome:
        stored = self._to_movie(record)
        if stored.updated_at > movie.updated_at:
            logger.warning(
                "Ignoring stale replay of %s (stored %s, received %s)",
                movie.external_id,
                stored.updated_at.isoformat(),
                movie.updated_at.isoformat(),
            )
            return UpsertOutcome.STALE
        outdated_labels = record.mood_ruleset != self._ruleset_version
        if stored.content_key() == movie.content_key() and not outdated_labels:
            return UpsertOutcome.UNCHANGED

        self._copy_fields(record, movie)
        if outdated_labels or stored.classification_key() != movie.classification_key():
            self._apply_labels(record, self._classify(movie))
        record.updated_at = utcnow()
        return UpsertOutcome.UPDATED

    @staticmethod
    def _copy_fields(record: MovieRecord, movie: Movie) -> None:
        record.title = movie.title
        record.release_year = movie.release_year
        record.genres = list(movie.genres)
        record.keywords = list(movie.keywords)
        record.rating = movie.rating
        record.synopsis = movie.synopsis
        record.source_updated_at = movie.updated_at

    def _apply_labels(self, record: MovieRecord, labels: frozenset[str]) -> None:
        unknown = labels.difference(self._bucket_names)
        if unknown:
            raise ValueError(
                f"Classifier produced unknown mood buckets: {', '.join(sorted(unknown))}"
            )
        for mood in list(record.moods):
            if mood.bucket not in labels:
                record.moods.remove(mood)
        existing = {mood.bucket for mood in record.moods}
        for bucket in sorted(labels - existing):
            record.moods.append(MovieMoodRecord(bucket=bucket))
        record.mood_ruleset = self._ruleset_version

    @staticmethod
    def _to_movie(record: MovieRecord) -> Movie:
        return Movie(
            external_id=record.external_id,
            title=record.title,
            release_year=record.release_year,
            genres=tuple(record.genres or ()),
            keywords=tuple(record.keywords or ()),
            rating=record.rating,
            synopsis=record.synopsis,
            updated_at=record.source_updated_at,
            mood_labels=frozenset(mood.bucket for mood in record.moods),
        )
