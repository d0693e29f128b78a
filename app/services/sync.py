"""Catalog sync cycle and its background scheduler."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing, suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..catalog import CatalogStore, UpsertOutcome
from ..config import Settings
from ..errors import MalformedRecordError, SyncError, SyncTimeoutError
from ..models import Movie
from ..sync_state import SyncStateStore
from .source import MetadataSource, SourceRecord

logger = logging.getLogger(__name__)

_END = object()


@dataclass
class SyncReport:
    """Summary of one sync cycle."""

    skipped: bool = False
    resumed_from: str | None = None
    revision: str | None = None
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    stale: int = 0
    malformed: int = 0
    retries: int = 0
    duration_seconds: float = 0.0
    malformed_ids: list[str] = field(default_factory=list)

    @property
    def committed(self) -> int:
        return self.inserted + self.updated + self.unchanged + self.stale

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome is UpsertOutcome.INSERTED:
            self.inserted += 1
        elif outcome is UpsertOutcome.UPDATED:
            self.updated += 1
        elif outcome is UpsertOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.stale += 1

    def to_payload(self) -> dict[str, Any]:
        return {
            "skipped": self.skipped,
            "resumedFrom": self.resumed_from,
            "revision": self.revision,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "stale": self.stale,
            "malformed": self.malformed,
            "retries": self.retries,
            "durationSeconds": round(self.duration_seconds, 3),
        }


class SyncService:
    """Runs sync cycles against a metadata source.

    At most one cycle runs at a time; overlapping requests are coalesced.
    Every record is committed on its own and followed by a checkpoint of its
    revision token, so an interrupted cycle resumes where it stopped.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: CatalogStore,
        sync_state: SyncStateStore,
        source: MetadataSource,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._settings = settings
        self._catalog = catalog
        self._state = sync_state
        self._source = source
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._scheduler_task: asyncio.Task[None] | None = None
        self._background_job: asyncio.Task[None] | None = None

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def run_cycle(self, *, full: bool = False) -> SyncReport:
        """Run one sync cycle, or return a skipped report if one is running."""

        if self._lock.locked():
            logger.info("Sync already in progress; coalescing request")
            return SyncReport(skipped=True)
        async with self._lock:
            return await self._run_cycle(full=full)

    def request_sync(self, *, full: bool = False) -> bool:
        """Start a cycle in the background; ``False`` when one is already running."""

        if self._lock.locked() or (
            self._background_job is not None and not self._background_job.done()
        ):
            return False

        async def _runner() -> None:
            try:
                await self.run_cycle(full=full)
            except SyncError as exc:
                logger.warning("Requested sync failed: %s", exc)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Requested sync crashed: %s", exc)

        self._background_job = asyncio.create_task(_runner())
        return True

    def start(self) -> None:
        """Launch the periodic resync loop."""

        if self._scheduler_task is None:
            self._scheduler_task = asyncio.create_task(self._schedule_loop())

    async def stop(self) -> None:
        """Cancel the scheduler and any in-flight background cycle."""

        for task in (self._scheduler_task, self._background_job):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._scheduler_task = None
        self._background_job = None

    async def _schedule_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.sync_interval_seconds)
            try:
                await self.run_cycle()
            except SyncError as exc:
                logger.warning("Scheduled sync failed; serving stale catalog: %s", exc)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled sync crashed: %s", exc)

    async def _run_cycle(self, *, full: bool) -> SyncReport:
        started = time.monotonic()
        snapshot = await self._state.mark_started(full=full)
        report = SyncReport(resumed_from=snapshot.revision, revision=snapshot.revision)
        logger.info(
            "Starting %s sync from %s (revision %s)",
            "full" if full else "incremental",
            self._source.name,
            snapshot.revision or "<start>",
        )

        attempt = 0
        try:
            while True:
                progress_before = report.committed + report.malformed
                try:
                    await self._consume(report)
                    break
                except SyncError as exc:
                    if not exc.transient:
                        raise
                    if report.committed + report.malformed > progress_before:
                        attempt = 0
                    attempt += 1
                    if attempt > self._settings.sync_retry_limit:
                        raise
                    delay = min(
                        self._settings.sync_backoff_seconds * 2 ** (attempt - 1),
                        self._settings.sync_backoff_max_seconds,
                    )
                    report.retries += 1
                    logger.info(
                        "Transient sync error (%s). Retry %s/%s in %.1fs from revision %s",
                        exc,
                        attempt,
                        self._settings.sync_retry_limit,
                        delay,
                        report.revision or "<start>",
                    )
                    await self._sleep(delay)
        except Exception as exc:
            await self._state.mark_failed(str(exc) or exc.__class__.__name__)
            logger.warning(
                "Sync failed after %s committed records at revision %s: %s",
                report.committed,
                report.revision or "<start>",
                exc,
            )
            raise

        await self._state.mark_succeeded()
        report.duration_seconds = time.monotonic() - started
        logger.info(
            "Sync finished: %s inserted, %s updated, %s unchanged, %s stale, %s malformed",
            report.inserted,
            report.updated,
            report.unchanged,
            report.stale,
            report.malformed,
        )
        return report

    async def _consume(self, report: SyncReport) -> None:
        timeout = self._settings.sync_timeout_seconds
        async with aclosing(self._source.fetch_since(report.revision)) as records:
            while True:
                try:
                    record = await asyncio.wait_for(anext(records, _END), timeout)
                except asyncio.TimeoutError as exc:
                    raise SyncTimeoutError(
                        f"No answer from {self._source.name} source within {timeout}s"
                    ) from exc
                if record is _END:
                    return
                await self._commit_record(record, report)

    async def _commit_record(self, record: SourceRecord, report: SyncReport) -> None:
        try:
            movie = Movie.from_source(record.payload)
        except MalformedRecordError as exc:
            report.malformed += 1
            if exc.external_id:
                report.malformed_ids.append(exc.external_id)
            logger.warning("Skipping malformed record at revision %s: %s", record.revision, exc)
            if record.revision is not None:
                await self._state.checkpoint(record.revision, committed=0)
                report.revision = record.revision
            return

        job = asyncio.ensure_future(self._store(movie, record.revision))
        try:
            outcome = await asyncio.shield(job)
        except asyncio.CancelledError:
            # Let the in-flight record land before honouring cancellation.
            await job
            raise
        report.record(outcome)
        if record.revision is not None:
            report.revision = record.revision

    async def _store(self, movie: Movie, revision: str | None) -> UpsertOutcome:
        outcome = await self._catalog.upsert(movie)
        if revision is not None:
            await self._state.checkpoint(revision)
        return outcome
