"""Startup state machine: setup check, migrations, initial sync."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .catalog import CatalogStore
from .errors import (
    ClassificationError,
    IncompatibleSchemaError,
    MigrationError,
    SyncError,
)
from .moods import MOOD_BUCKETS, MOOD_RULES, MoodBucket, MoodRule, validate_rules
from .schema import SchemaStore
from .services.sync import SyncService
from .utils import utcnow

logger = logging.getLogger(__name__)


class BootstrapPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    MIGRATING = "migrating"
    SYNCING = "syncing"
    READY = "ready"
    FAILED = "failed"


_TRANSITIONS: dict[BootstrapPhase, frozenset[BootstrapPhase]] = {
    BootstrapPhase.UNINITIALIZED: frozenset(
        {BootstrapPhase.MIGRATING, BootstrapPhase.FAILED}
    ),
    BootstrapPhase.MIGRATING: frozenset({BootstrapPhase.SYNCING, BootstrapPhase.FAILED}),
    BootstrapPhase.SYNCING: frozenset({BootstrapPhase.READY, BootstrapPhase.FAILED}),
    BootstrapPhase.READY: frozenset(),
    BootstrapPhase.FAILED: frozenset(),
}


@dataclass
class BootstrapStatus:
    """Live view of the startup sequence shared with the health endpoint."""

    phase: BootstrapPhase = BootstrapPhase.UNINITIALIZED
    reason: str | None = None
    error: Exception | None = None
    schema_version: int = 0
    latest_schema_version: int = 0
    first_run: bool = False
    schema_ready: bool = False
    degraded: bool = False
    changed_at: datetime = field(default_factory=utcnow)
    ready_at: datetime | None = None

    @property
    def catalog_available(self) -> bool:
        """Whether catalog reads are allowed (migrations have completed)."""

        return self.schema_ready

    @property
    def ok(self) -> bool:
        return self.phase is BootstrapPhase.READY

    def to_payload(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "reason": self.reason,
            "error": self.error.__class__.__name__ if self.error else None,
            "schemaVersion": self.schema_version,
            "latestSchemaVersion": self.latest_schema_version,
            "firstRun": self.first_run,
            "degraded": self.degraded,
            "changedAt": self.changed_at.isoformat(),
            "readyAt": self.ready_at.isoformat() if self.ready_at else None,
        }


class Bootstrapper:
    """Drives the process from launch to a servable catalog.

    ``bootstrap()`` is safe to call repeatedly: once the machine reaches
    ``ready`` or ``failed`` the existing status is returned unchanged.
    """

    def __init__(
        self,
        schema: SchemaStore,
        catalog: CatalogStore,
        sync: SyncService | None,
        *,
        sync_on_startup: bool = True,
        rules: Sequence[MoodRule] = MOOD_RULES,
        buckets: Sequence[MoodBucket] = MOOD_BUCKETS,
    ):
        self._schema = schema
        self._catalog = catalog
        self._sync = sync
        self._sync_on_startup = sync_on_startup
        self._rules = rules
        self._buckets = buckets
        self._status = BootstrapStatus(latest_schema_version=schema.latest_version)

    @property
    def status(self) -> BootstrapStatus:
        return self._status

    def configure(self, sync: SyncService) -> None:
        """Attach the sync service produced once setup has completed."""

        if self._status.phase is not BootstrapPhase.UNINITIALIZED:
            raise RuntimeError(
                f"Cannot configure a bootstrap in phase {self._status.phase.value}"
            )
        self._sync = sync
        self._status.reason = None

    async def bootstrap(self) -> BootstrapStatus:
        """Run the startup sequence and return the resulting status."""

        if self._status.phase is not BootstrapPhase.UNINITIALIZED:
            return self._status

        if self._sync is None:
            self._status.reason = "Setup required: no metadata source is configured"
            logger.info("No metadata source configured; waiting for setup")
            return self._status

        try:
            validate_rules(self._rules, self._buckets)
        except ClassificationError as exc:
            return self._fail(exc, "Mood rule table is invalid")

        self._transition(BootstrapPhase.MIGRATING)
        try:
            version = await self._schema.current_version()
            self._status.first_run = version == 0
            if self._status.first_run:
                logger.info("Fresh install detected; creating catalog database")
            self._status.schema_version = version
            await self._schema.migrate()
            self._status.schema_version = await self._schema.current_version()
        except (IncompatibleSchemaError, MigrationError) as exc:
            return self._fail(exc, str(exc))
        except SQLAlchemyError as exc:
            logger.exception("Catalog database could not be opened")
            return self._fail(exc, f"Catalog database error: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error while migrating the catalog")
            return self._fail(exc, f"Migration crashed: {exc}")
        self._status.schema_ready = True

        self._transition(BootstrapPhase.SYNCING)
        try:
            await self._catalog.reclassify_outdated()
            if self._sync_on_startup:
                await self._sync.run_cycle()
            else:
                logger.info("Startup sync disabled; serving the stored catalog")
        except SyncError as exc:
            if await self._catalog.count() == 0:
                return self._fail(exc, f"Initial sync failed: {exc}")
            self._status.degraded = True
            self._status.reason = f"Sync failed, serving stored catalog: {exc}"
            logger.warning("Initial sync failed; continuing with stored catalog: %s", exc)
        except SQLAlchemyError as exc:
            logger.exception("Catalog storage failed during initial sync")
            return self._fail(exc, f"Catalog database error: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error during initial sync")
            return self._fail(exc, f"Initial sync crashed: {exc}")

        self._transition(BootstrapPhase.READY)
        self._status.ready_at = self._status.changed_at
        return self._status

    def _transition(self, phase: BootstrapPhase) -> None:
        current = self._status.phase
        if phase not in _TRANSITIONS[current]:
            raise RuntimeError(
                f"Illegal bootstrap transition {current.value} -> {phase.value}"
            )
        logger.info("Bootstrap %s -> %s", current.value, phase.value)
        self._status.phase = phase
        self._status.changed_at = utcnow()

    def _fail(self, error: Exception, reason: str) -> BootstrapStatus:
        self._transition(BootstrapPhase.FAILED)
        self._status.error = error
        self._status.reason = reason
        logger.error("Bootstrap failed: %s", reason)
        return self._status
