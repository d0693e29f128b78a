"""Adapters that feed raw movie records into the sync cycle."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Protocol

import httpx

from ..config import Settings
from ..errors import SyncNetworkError, SyncTimeoutError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SourceRecord:
    """A raw movie payload and the revision token reached after it."""

    revision: str | None
    payload: Any


class MetadataSource(Protocol):
    """Anything that can stream movie records after a revision token.

    Implementations are async generators: exhausting the iterator is the
    end-of-feed signal. Records may arrive in any order.
    """

    name: str

    def fetch_since(self, revision: str | None) -> AsyncIterator[SourceRecord]:
        ...


class HttpMetadataSource:
    """Reads an upstream changes feed over HTTP.

    The feed answers ``GET /changes?since=<token>&limit=<n>`` with
    ``{"results": [{"seq": ..., "movie": {...}}], "last_seq": ..., "pending": n}``.
    """

    name = "http"
    _CHANGES_PATH = "/changes"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        *,
        api_key: str | None = None,
        page_size: int = 100,
        user_agent: str = "Rasa Server",
    ) -> None:
        normalized = self._normalize_base_url(base_url)
        if not normalized:
            raise ValueError("A metadata source URL is required")
        self._client = http_client
        self._base_url = normalized
        self._api_key = api_key
        self._page_size = page_size
        self._user_agent = user_agent

    @property
    def base_url(self) -> str:
        return self._base_url

    async def fetch_since(self, revision: str | None) -> AsyncIterator[SourceRecord]:
        since = revision
        while True:
            payload = await self._fetch_page(since)
            results = payload.get("results") or []
            if not isinstance(results, list):
                raise SyncNetworkError("Metadata source returned a malformed changes page")
            if not results:
                return

            last_seen: str | None = None
            for entry in results:
                seq = entry.get("seq") if isinstance(entry, dict) else None
                movie = entry.get("movie", entry) if isinstance(entry, dict) else entry
                token = str(seq) if seq is not None else None
                if token is not None:
                    last_seen = token
                yield SourceRecord(revision=token, payload=movie)

            last_seq = payload.get("last_seq")
            next_since = str(last_seq) if last_seq is not None else last_seen
            if next_since is None or next_since == since:
                return
            pending = payload.get("pending")
            if isinstance(pending, int) and pending <= 0:
                return
            since = next_since

    async def _fetch_page(self, since: str | None) -> dict[str, Any]:
        url = f"{self._base_url}{self._CHANGES_PATH}"
        params: dict[str, Any] = {"limit": self._page_size}
        if since is not None:
            params["since"] = since
        headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            response = await self._client.get(url, params=params, headers=headers)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise SyncTimeoutError(
                f"Metadata source at {self._base_url} timed out"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise SyncNetworkError(
                f"Metadata source answered HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SyncNetworkError(
                f"Metadata source at {self._base_url} is unreachable: {exc}"
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncNetworkError("Metadata source returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise SyncNetworkError("Metadata source returned a malformed changes page")
        return payload

    @staticmethod
    def _normalize_base_url(value: str | None) -> str | None:
        if not value:
            return None
        normalized = str(value).strip().rstrip("/")
        if normalized.lower().endswith(HttpMetadataSource._CHANGES_PATH):
            normalized = normalized[: -len(HttpMetadataSource._CHANGES_PATH)].rstrip("/")
        return normalized or None


class BundledDatasetSource:
    """Serves records from a JSON list shipped with the application.

    Revision tokens embed a digest of the file, so a token produced by an
    older dataset starts the feed over instead of skipping new records.
    """

    name = "bundled"
    _PREFIX = "bundled"

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def fetch_since(self, revision: str | None) -> AsyncIterator[SourceRecord]:
        try:
            raw = await asyncio.to_thread(self._path.read_bytes)
        except OSError as exc:
            raise SyncNetworkError(f"Bundled dataset {self._path} is unreadable: {exc}") from exc
        digest = hashlib.sha256(raw).hexdigest()[:12]
        try:
            records = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise SyncNetworkError(f"Bundled dataset {self._path} is not valid JSON") from exc
        if isinstance(records, dict):
            records = records.get("movies") or []
        if not isinstance(records, list):
            raise SyncNetworkError(f"Bundled dataset {self._path} must contain a list")

        start = self._position(revision, digest)
        for position in range(start, len(records)):
            yield SourceRecord(
                revision=f"{self._PREFIX}:{digest}:{position + 1}",
                payload=records[position],
            )

    def _position(self, revision: str | None, digest: str) -> int:
        if not revision:
            return 0
        prefix, _, remainder = revision.partition(":")
        token_digest, _, position = remainder.partition(":")
        if prefix != self._PREFIX or token_digest != digest:
            logger.info("Bundled dataset changed since revision %s; starting over", revision)
            return 0
        try:
            return max(int(position), 0)
        except ValueError:
            return 0


def build_metadata_source(
    settings: Settings, http_client: httpx.AsyncClient
) -> MetadataSource | None:
    """Return the configured adapter, or ``None`` when setup is incomplete."""

    if not settings.is_configured:
        return None
    if settings.sync_source == "http":
        return HttpMetadataSource(
            http_client,
            str(settings.sync_source_url),
            api_key=settings.sync_api_key,
            page_size=settings.sync_page_size,
            user_agent=settings.app_name,
        )
    return BundledDatasetSource(settings.dataset_path)
