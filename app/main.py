"""Entry point for the FastAPI-powered Rasa catalog server."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import settings
from .core import CatalogUnavailableError, RasaCore
from .database import Database
from .services.source import build_metadata_source

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    source_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            timeout=httpx.Timeout(settings.sync_timeout_seconds, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    source = build_metadata_source(settings, source_client)
    core = RasaCore(settings, database, source)

    fastapi_app.state.core = core
    await core.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await core.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Self-hosted movie catalog organised by mood",
        version=__version__,
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_core(app: FastAPI) -> RasaCore:
    core = getattr(app.state, "core", None)
    if not isinstance(core, RasaCore):
        raise RuntimeError("Catalog core not initialised")
    return core


def register_routes(fastapi_app: FastAPI) -> None:
    def _unavailable(exc: CatalogUnavailableError) -> HTTPException:
        return HTTPException(
            status_code=503,
            detail={"error": "catalog_unavailable", "description": str(exc)},
        )

    @fastapi_app.get("/health")
    async def health() -> dict[str, Any]:
        return await get_core(fastapi_app).health()

    @fastapi_app.get("/api/v1/moods")
    async def list_moods() -> dict[str, Any]:
        try:
            return await get_core(fastapi_app).list_moods()
        except CatalogUnavailableError as exc:
            raise _unavailable(exc) from exc

    @fastapi_app.get("/api/v1/moods/{name}")
    async def mood_members(name: str) -> dict[str, Any]:
        try:
            return await get_core(fastapi_app).mood_members(name)
        except CatalogUnavailableError as exc:
            raise _unavailable(exc) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown mood bucket {name}") from exc

    @fastapi_app.get("/api/v1/movies")
    async def list_movies(
        offset: int = Query(default=0, ge=0),
        limit: int | None = Query(default=None, ge=1, le=500),
    ) -> dict[str, Any]:
        try:
            return await get_core(fastapi_app).list_movies(offset=offset, limit=limit)
        except CatalogUnavailableError as exc:
            raise _unavailable(exc) from exc

    @fastapi_app.get("/api/v1/movies/{external_id}")
    async def get_movie(external_id: str) -> dict[str, Any]:
        try:
            return await get_core(fastapi_app).get_movie(external_id)
        except CatalogUnavailableError as exc:
            raise _unavailable(exc) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Movie {external_id} not found") from exc

    @fastapi_app.post("/api/v1/sync")
    async def trigger_sync(full: bool = False) -> JSONResponse:
        accepted = get_core(fastapi_app).request_sync(full=full)
        return JSONResponse({"accepted": accepted}, status_code=202)


app = create_app()
