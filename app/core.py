"""Composition of the catalog core exposed to the HTTP layer."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any

from . import __version__
from .bootstrap import BootstrapPhase, Bootstrapper, BootstrapStatus
from .catalog import CatalogStore
from .config import Settings
from .database import Database
from .moods import MOOD_BUCKETS, RULESET_VERSION, find_bucket
from .schema import SchemaStore
from .services.source import MetadataSource
from .services.sync import SyncService
from .sync_state import SyncStateStore, SyncStatus

logger = logging.getLogger(__name__)


class CatalogUnavailableError(RuntimeError):
    """Raised when catalog reads are attempted before migrations completed."""


class RasaCore:
    """Owns the stores, the sync service and the bootstrap state machine."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        source: MetadataSource | None,
        *,
        schema: SchemaStore | None = None,
    ):
        self._settings = settings
        self._database = database
        self.schema = schema or SchemaStore(database)
        self.catalog = CatalogStore(database.session_factory)
        self.sync_state = SyncStateStore(database.session_factory)
        self.sync: SyncService | None = None
        if source is not None:
            self.sync = self._build_sync(source)
        self.bootstrapper = Bootstrapper(
            self.schema,
            self.catalog,
            self.sync,
            sync_on_startup=settings.sync_on_startup,
        )
        self._bootstrap_task: asyncio.Task[None] | None = None

    @property
    def status(self) -> BootstrapStatus:
        return self.bootstrapper.status

    def configure(self, source: MetadataSource) -> None:
        """Attach a metadata source once the external setup step produced one."""

        sync = self._build_sync(source)
        self.bootstrapper.configure(sync)
        self.sync = sync

    async def bootstrap(self) -> BootstrapStatus:
        """Run the startup sequence; start periodic resync once ready."""

        status = await self.bootstrapper.bootstrap()
        if status.phase is BootstrapPhase.READY and self.sync is not None:
            self.sync.start()
        return status

    async def start(self) -> None:
        """Bootstrap in the background so health checks answer immediately."""

        if self._bootstrap_task is None:
            self._bootstrap_task = asyncio.create_task(self._run_bootstrap())

    async def stop(self) -> None:
        if self._bootstrap_task is not None:
            self._bootstrap_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._bootstrap_task
            self._bootstrap_task = None
        if self.sync is not None:
            await self.sync.stop()

    async def health(self) -> dict[str, Any]:
        """Liveness payload with schema and sync details."""

        status = self.status
        sync_payload: dict[str, Any] | None = None
        sync_failed = False
        if status.catalog_available:
            snapshot = await self.sync_state.load()
            sync_payload = snapshot.to_payload()
            sync_failed = snapshot.status is SyncStatus.FAILED

        if status.phase is BootstrapPhase.READY:
            overall = "degraded" if status.degraded or sync_failed else "ok"
        elif status.phase is BootstrapPhase.FAILED:
            overall = "failed"
        elif status.phase is BootstrapPhase.UNINITIALIZED and status.reason:
            overall = "setup_required"
        else:
            overall = "starting"

        return {
            "status": overall,
            "app": self._settings.app_name,
            "version": __version__,
            "syncing": bool(self.sync and self.sync.in_progress),
            "syncState": sync_payload,
            **status.to_payload(),
        }

    async def list_moods(self) -> dict[str, Any]:
        self._ensure_catalog_available()
        counts = await self.catalog.mood_counts()
        return {
            "moods": {
                bucket.name: {
                    "slug": bucket.slug,
                    "description": bucket.description,
                    "count": counts.get(bucket.name, 0),
                }
                for bucket in MOOD_BUCKETS
            },
            "rulesetVersion": RULESET_VERSION,
        }

    async def mood_members(self, name: str) -> dict[str, Any]:
        self._ensure_catalog_available()
        bucket = find_bucket(name)
        if bucket is None:
            raise KeyError(f"Unknown mood bucket {name}")
        movies = await self.catalog.by_mood_bucket(bucket.name)
        return {
            "mood": bucket.name,
            "description": bucket.description,
            "movies": [movie.to_payload() for movie in movies],
            "count": len(movies),
        }

    async def list_movies(
        self, *, offset: int = 0, limit: int | None = None
    ) -> dict[str, Any]:
        self._ensure_catalog_available()
        movies, total = await self.catalog.list_page(offset=offset, limit=limit)
        return {
            "movies": [movie.to_payload() for movie in movies],
            "totalCount": total,
            "offset": offset,
            "limit": limit,
        }

    async def get_movie(self, external_id: str) -> dict[str, Any]:
        self._ensure_catalog_available()
        movie = await self.catalog.get(external_id)
        if movie is None:
            raise KeyError(f"Movie {external_id} not found")
        return movie.to_payload()

    def request_sync(self, *, full: bool = False) -> bool:
        """Queue a background sync; ``False`` when not ready or already running."""

        if self.sync is None or self.status.phase is not BootstrapPhase.READY:
            return False
        return self.sync.request_sync(full=full)

    def _build_sync(self, source: MetadataSource) -> SyncService:
        return SyncService(self._settings, self.catalog, self.sync_state, source)

    def _ensure_catalog_available(self) -> None:
        if not self.status.catalog_available:
            raise CatalogUnavailableError(
                self.status.reason or f"Catalog is {self.status.phase.value}"
            )

    async def _run_bootstrap(self) -> None:
        try:
            await self.bootstrap()
        except Exception as exc:  # pragma: no cover - background safety net
            logger.exception("Bootstrap crashed: %s", exc)
