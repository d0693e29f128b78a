"""Tests for the catalog sync cycle."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import pytest

from app.catalog import CatalogStore
from app.config import Settings
from app.core import RasaCore
from app.database import Database
from app.errors import SyncNetworkError, SyncTimeoutError
from app.schema import SchemaStore
from app.services.source import SourceRecord
from app.services.sync import SyncService
from app.sync_state import SyncStateStore, SyncStatus


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture(autouse=True)
def _no_config_file(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("RASA_CONFIG_FILE", str(tmp_path / "absent.yaml"))


def _payload(index: int, *, updated_at: str = "2024-01-01T00:00:00Z") -> dict[str, Any]:
    return {
        "id": f"tt{index:07d}",
        "title": f"Movie {index}",
        "genres": ["Drama"],
        "rating": 7.0,
        "updatedAt": updated_at,
    }


class ListSource:
    """In-memory source whose revision tokens are list positions."""

    name = "memory"

    def __init__(
        self,
        payloads: list[Any],
        *,
        fail_at: int | None = None,
        failures: int = 0,
        error: Exception | None = None,
    ) -> None:
        self.payloads = payloads
        self.fail_at = fail_at
        self.failures = failures
        self.error = error or SyncNetworkError("connection reset")
        self.requested: list[str | None] = []

    async def fetch_since(self, revision: str | None) -> AsyncIterator[SourceRecord]:
        self.requested.append(revision)
        for index in range(int(revision or 0), len(self.payloads)):
            if index == self.fail_at and self.failures > 0:
                self.failures -= 1
                raise self.error
            yield SourceRecord(str(index + 1), self.payloads[index])


class GatedSource(ListSource):
    """Yields ``gate_at`` records and then waits until released."""

    def __init__(self, payloads: list[Any], *, gate_at: int) -> None:
        super().__init__(payloads)
        self.gate_at = gate_at
        self.reached = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_since(self, revision: str | None) -> AsyncIterator[SourceRecord]:
        self.requested.append(revision)
        for index in range(int(revision or 0), len(self.payloads)):
            if index == self.gate_at:
                self.reached.set()
                await self.release.wait()
            yield SourceRecord(str(index + 1), self.payloads[index])


def build_settings(**overrides: Any) -> Settings:
    """Return settings with fast retries suitable for tests."""

    base: dict[str, Any] = {"SYNC_BACKOFF": 0, "SYNC_RETRY_LIMIT": 3, "SYNC_TIMEOUT": 5}
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


class Harness:
    def __init__(self, database: Database) -> None:
        self.database = database
        self.catalog = CatalogStore(database.session_factory)
        self.sync_state = SyncStateStore(database.session_factory)
        self.delays: list[float] = []

    def service(self, source: ListSource, **settings: Any) -> SyncService:
        async def fake_sleep(delay: float) -> None:
            self.delays.append(delay)

        return SyncService(
            build_settings(**settings),
            self.catalog,
            self.sync_state,
            source,
            sleep=fake_sleep,
        )


@asynccontextmanager
async def harness(path) -> AsyncIterator[Harness]:
    database = Database(f"sqlite+aiosqlite:///{path}")
    try:
        await SchemaStore(database).migrate()
        yield Harness(database)
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_sync_inserts_records_and_marks_success(tmp_path) -> None:
    async with harness(tmp_path / "sync.db") as h:
        report = await h.service(ListSource([_payload(1), _payload(2)])).run_cycle()
        state = await h.sync_state.load()
        count = await h.catalog.count()

    assert report.inserted == 2
    assert report.committed == 2
    assert report.revision == "2"
    assert report.resumed_from is None
    assert count == 2
    assert state.status is SyncStatus.IDLE
    assert state.revision == "2"
    assert state.records_synced == 2
    assert state.last_succeeded_at is not None
    assert state.last_error is None


@pytest.mark.anyio("asyncio")
async def test_interrupted_sync_resumes_from_checkpoint(tmp_path) -> None:
    payloads = [_payload(index) for index in range(1, 11)]

    async with harness(tmp_path / "resumed.db") as h:
        failing = ListSource(payloads, fail_at=5, failures=1)
        with pytest.raises(SyncNetworkError):
            await h.service(failing, SYNC_RETRY_LIMIT=0).run_cycle()

        failed_state = await h.sync_state.load()
        partial = await h.catalog.count()

        resumed_source = ListSource(payloads)
        report = await h.service(resumed_source).run_cycle()
        resumed = [movie.to_payload() async for movie in h.catalog.list_all()]

    async with harness(tmp_path / "straight.db") as h:
        await h.service(ListSource(payloads)).run_cycle()
        straight = [movie.to_payload() async for movie in h.catalog.list_all()]

    assert failed_state.status is SyncStatus.FAILED
    assert failed_state.revision == "5"
    assert failed_state.records_synced == 5
    assert "connection reset" in (failed_state.last_error or "")
    assert partial == 5
    assert resumed_source.requested == ["5"]
    assert report.resumed_from == "5"
    assert report.inserted == 5
    assert resumed == straight


@pytest.mark.anyio("asyncio")
async def test_transient_errors_are_retried_with_backoff(tmp_path) -> None:
    source = ListSource([_payload(index) for index in range(1, 6)], fail_at=3, failures=2)

    async with harness(tmp_path / "retry.db") as h:
        report = await h.service(source, SYNC_BACKOFF=0.5).run_cycle()
        delays = h.delays

    assert report.inserted == 5
    assert report.retries == 2
    assert delays == [0.5, 1.0]
    assert source.requested == [None, "3", "3"]


@pytest.mark.anyio("asyncio")
async def test_retries_give_up_after_the_limit(tmp_path) -> None:
    source = ListSource([_payload(1)], fail_at=0, failures=10)

    async with harness(tmp_path / "exhausted.db") as h:
        with pytest.raises(SyncNetworkError):
            await h.service(
                source, SYNC_RETRY_LIMIT=2, SYNC_BACKOFF=1, SYNC_BACKOFF_MAX=1.5
            ).run_cycle()
        state = await h.sync_state.load()
        delays = h.delays

    assert len(source.requested) == 3
    assert delays == [1.0, 1.5]
    assert state.status is SyncStatus.FAILED


@pytest.mark.anyio("asyncio")
async def test_malformed_records_are_skipped(tmp_path) -> None:
    payloads = [_payload(1), {"id": "ttbroken", "title": "No Timestamp"}, "junk", _payload(2)]

    async with harness(tmp_path / "malformed.db") as h:
        report = await h.service(ListSource(payloads)).run_cycle()
        state = await h.sync_state.load()
        count = await h.catalog.count()

    assert report.inserted == 2
    assert report.malformed == 2
    assert report.malformed_ids == ["ttbroken"]
    assert count == 2
    assert state.revision == "4"
    assert state.records_synced == 2
    assert state.status is SyncStatus.IDLE


@pytest.mark.anyio("asyncio")
async def test_silent_source_times_out(tmp_path) -> None:
    source = GatedSource([_payload(1), _payload(2)], gate_at=1)

    async with harness(tmp_path / "timeout.db") as h:
        with pytest.raises(SyncTimeoutError):
            await h.service(source, SYNC_TIMEOUT=0.05, SYNC_RETRY_LIMIT=0).run_cycle()
        state = await h.sync_state.load()
        count = await h.catalog.count()

    assert count == 1
    assert state.status is SyncStatus.FAILED
    assert state.revision == "1"


@pytest.mark.anyio("asyncio")
async def test_overlapping_requests_are_coalesced(tmp_path) -> None:
    source = GatedSource([_payload(1), _payload(2)], gate_at=1)

    async with harness(tmp_path / "coalesce.db") as h:
        service = h.service(source)
        first = asyncio.create_task(service.run_cycle())
        await source.reached.wait()

        assert service.in_progress
        assert service.request_sync() is False
        second = await service.run_cycle()

        source.release.set()
        report = await first

    assert second.skipped
    assert report.inserted == 2
    assert source.requested == [None]


@pytest.mark.anyio("asyncio")
async def test_cancelled_sync_resumes_on_next_run(tmp_path) -> None:
    payloads = [_payload(index) for index in range(1, 6)]
    gated = GatedSource(payloads, gate_at=3)

    async with harness(tmp_path / "cancel.db") as h:
        task = asyncio.create_task(h.service(gated).run_cycle())
        await gated.reached.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        interrupted = await h.sync_state.load()

        source = ListSource(payloads)
        report = await h.service(source).run_cycle()
        count = await h.catalog.count()

    assert interrupted.status is SyncStatus.IN_PROGRESS
    assert interrupted.revision == "3"
    assert source.requested == ["3"]
    assert report.inserted == 2
    assert count == 5


@pytest.mark.anyio("asyncio")
async def test_full_sync_counts_stale_replays(tmp_path) -> None:
    newer = [_payload(1, updated_at="2024-03-01T00:00:00Z")]
    older = [_payload(1, updated_at="2024-01-01T00:00:00Z"), _payload(2)]

    async with harness(tmp_path / "stale.db") as h:
        await h.service(ListSource(newer)).run_cycle()
        replay = ListSource(older)
        report = await h.service(replay).run_cycle(full=True)
        stored = await h.catalog.get("tt0000001")

    assert replay.requested == [None]
    assert report.stale == 1
    assert report.inserted == 1
    assert stored.updated_at.month == 3


@pytest.mark.anyio("asyncio")
async def test_request_sync_runs_in_background(tmp_path) -> None:
    async with harness(tmp_path / "background.db") as h:
        service = h.service(ListSource([_payload(1)]))

        assert service.request_sync() is True
        for _ in range(100):
            if await h.catalog.count() == 1 and not service.in_progress:
                break
            await asyncio.sleep(0.01)
        await service.stop()
        state = await h.sync_state.load()

    assert state.status is SyncStatus.IDLE
    assert state.revision == "1"


@pytest.mark.anyio("asyncio")
async def test_badly_typed_fields_only_skip_their_record(tmp_path) -> None:
    broken = dict(_payload(2), genres=42)

    async with harness(tmp_path / "typed.db") as h:
        report = await h.service(ListSource([_payload(1), broken, _payload(3)])).run_cycle()
        stored = await h.catalog.get("tt0000003")

    assert report.malformed == 1
    assert report.malformed_ids == ["tt0000002"]
    assert report.inserted == 2
    assert stored is not None


@pytest.mark.anyio("asyncio")
async def test_synced_records_show_up_in_mood_counts(tmp_path) -> None:
    comedy = dict(_payload(1), genres=["Comedy"], rating=8.2)
    horror = dict(_payload(2), genres=["Horror"], rating=3.0)
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'moods.db'}")
    core = RasaCore(
        build_settings(SYNC_ON_STARTUP=False), database, ListSource([comedy, horror])
    )
    try:
        await core.bootstrap()
        report = await core.sync.run_cycle()
        moods = await core.list_moods()
    finally:
        await core.stop()
        await database.dispose()

    counts = {name: entry["count"] for name, entry in moods["moods"].items()}
    assert report.inserted == 2
    assert counts["Uplifting"] == 1
    assert counts["Unclassified"] == 1
    assert sum(counts.values()) == 2
