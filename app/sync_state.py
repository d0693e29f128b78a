"""Persistence for the singleton sync bookkeeping row."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import SyncStateRecord
from .utils import utcnow

logger = logging.getLogger(__name__)

SYNC_STATE_ID = 1


class SyncStatus(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncStateSnapshot:
    """Read-only view of the sync bookkeeping row."""

    status: SyncStatus
    revision: str | None
    last_attempted_at: datetime | None
    last_succeeded_at: datetime | None
    last_error: str | None
    records_synced: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "revision": self.revision,
            "lastAttemptedAt": (
                self.last_attempted_at.isoformat() if self.last_attempted_at else None
            ),
            "lastSucceededAt": (
                self.last_succeeded_at.isoformat() if self.last_succeeded_at else None
            ),
            "lastError": self.last_error,
            "recordsSynced": self.records_synced,
        }


class SyncStateStore:
    """Reads and mutates the sync bookkeeping row.

    Only the sync cycle writes through this store. The row is created by a
    migration; if it has gone missing it is recreated rather than treated as
    an error.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load(self) -> SyncStateSnapshot:
        async with self._session_factory() as session:
            record = await session.get(SyncStateRecord, SYNC_STATE_ID)
            if record is None:
                return SyncStateSnapshot(
                    status=SyncStatus.IDLE,
                    revision=None,
                    last_attempted_at=None,
                    last_succeeded_at=None,
                    last_error=None,
                    records_synced=0,
                )
            return self._to_snapshot(record)

    async def mark_started(self, *, full: bool = False) -> SyncStateSnapshot:
        """Flag a cycle as running and return the state it should resume from."""

        async with self._session_factory() as session:
            async with session.begin():
                record = await self._get_or_create(session)
                if record.status == SyncStatus.IN_PROGRESS.value:
                    logger.info(
                        "Previous sync was interrupted; resuming from revision %s",
                        record.revision,
                    )
                elif record.status == SyncStatus.FAILED.value:
                    logger.info(
                        "Previous sync failed (%s); resuming from revision %s",
                        record.last_error,
                        record.revision,
                    )
                if full:
                    record.revision = None
                now = utcnow()
                record.status = SyncStatus.IN_PROGRESS.value
                record.last_attempted_at = now
                record.updated_at = now
                return self._to_snapshot(record)

    async def checkpoint(self, revision: str, *, committed: int = 1) -> None:
        """Record the revision of the last record that was committed."""

        async with self._session_factory() as session:
            async with session.begin():
                record = await self._get_or_create(session)
                record.revision = revision
                record.records_synced = (record.records_synced or 0) + committed
                record.updated_at = utcnow()

    async def mark_succeeded(self) -> SyncStateSnapshot:
        async with self._session_factory() as session:
            async with session.begin():
                record = await self._get_or_create(session)
                now = utcnow()
                record.status = SyncStatus.IDLE.value
                record.last_succeeded_at = now
                record.last_error = None
                record.updated_at = now
                return self._to_snapshot(record)

    async def mark_failed(self, error: str) -> SyncStateSnapshot:
        async with self._session_factory() as session:
            async with session.begin():
                record = await self._get_or_create(session)
                record.status = SyncStatus.FAILED.value
                record.last_error = error
                record.updated_at = utcnow()
                return self._to_snapshot(record)

    @staticmethod
    async def _get_or_create(session: AsyncSession) -> SyncStateRecord:
        record = await session.get(SyncStateRecord, SYNC_STATE_ID)
        if record is None:
            logger.warning("Sync state row missing; recreating it")
            record = SyncStateRecord(
                id=SYNC_STATE_ID,
                status=SyncStatus.IDLE.value,
                records_synced=0,
                updated_at=utcnow(),
            )
            session.add(record)
        return record

    @staticmethod
    def _to_snapshot(record: SyncStateRecord) -> SyncStateSnapshot:
        return SyncStateSnapshot(
            status=SyncStatus(record.status),
            revision=record.revision,
            last_attempted_at=record.last_attempted_at,
            last_succeeded_at=record.last_succeeded_at,
            last_error=record.last_error,
            records_synced=record.records_synced or 0,
        )
