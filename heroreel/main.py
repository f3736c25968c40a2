"""Entry point for the FastAPI-powered hero pool service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import Database
from .errors import RefreshFailed
from .models import ALL_KINDS, MediaKind, normalize_kind
from .policy import PolicyLoader
from .services.candidates import DatabaseCandidateSource
from .services.context import EngineContext
from .services.enrichment import EnrichmentClient
from .services.pipeline import HeroPipeline, RemotePoolClient
from .services.pool_cache import DatabasePoolStore, PoolCache

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI

FORCE_VALUES = {"1", "true", "yes", "force"}


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(settings.tmdb_timeout_seconds, connect=5.0),
        )
    )
    remote_client: RemotePoolClient | None = None
    if settings.hero_api_url is not None:
        remote_http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.hero_api_url),
                timeout=httpx.Timeout(settings.hero_api_timeout_seconds, connect=5.0),
            )
        )
        remote_client = RemotePoolClient(remote_http_client)

    database = Database(settings.database_url)
    await database.create_all()

    context = EngineContext(
        settings, policy_loader=PolicyLoader(settings.hero_policy_path)
    )
    enricher = EnrichmentClient(settings, tmdb_http_client)
    pipeline = HeroPipeline(
        context,
        PoolCache(context, DatabasePoolStore(database.session_factory)),
        DatabaseCandidateSource(database.session_factory),
        enricher=enricher,
        remote=remote_client,
        user_override=settings.hero_pipeline_enabled,
    )

    app.state.hero_pipeline = pipeline
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await pipeline.close()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Curated, rotating hero banner pools for a personal media catalog",
        version="1.0.0",
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


def get_hero_pipeline(app: FastAPI) -> HeroPipeline:
    pipeline = getattr(app.state, "hero_pipeline", None)
    if pipeline is None:
        raise RuntimeError("Hero pipeline not initialised")
    return pipeline


def _parse_kind(raw: str) -> MediaKind:
    try:
        return normalize_kind(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Unsupported hero kind") from exc


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/hero/debug")
    async def hero_debug() -> dict[str, Any]:
        pipeline = get_hero_pipeline(fastapi_app)
        return pipeline.get_debug_snapshot()

    @fastapi_app.post("/api/hero/refresh")
    async def hero_refresh_all() -> dict[str, Any]:
        pipeline = get_hero_pipeline(fastapi_app)
        pipeline.reload_policy()
        statuses = await pipeline.refresh_all()
        return {
            "status": {
                kind.value: statuses[kind].model_dump(mode="json", by_alias=True)
                for kind in ALL_KINDS
            }
        }

    @fastapi_app.get("/api/hero/{kind}")
    async def hero_pool(kind: str, force: str | None = None) -> dict[str, Any]:
        normalized = _parse_kind(kind)
        pipeline = get_hero_pipeline(fastapi_app)
        pipeline.reload_policy()
        if not pipeline.enabled:
            raise HTTPException(status_code=404, detail="Hero pipeline disabled")

        forced = (force or "").strip().lower() in FORCE_VALUES
        try:
            if forced:
                result = await pipeline.refresh(normalized)
            else:
                result = await pipeline.ensure(normalized)
        except RefreshFailed as exc:
            logger.warning("Serving no hero pool for %s: %s", normalized.value, exc)
            raise HTTPException(status_code=503, detail="Hero content unavailable") from exc
        if result is None:
            raise HTTPException(status_code=503, detail="Hero content unavailable")
        return result.to_payload()

    @fastapi_app.get("/api/hero/{kind}/status")
    async def hero_status(kind: str) -> dict[str, Any]:
        normalized = _parse_kind(kind)
        pipeline = get_hero_pipeline(fastapi_app)
        return pipeline.get_status(normalized).model_dump(mode="json", by_alias=True)

    @fastapi_app.get("/api/hero/{kind}/rotation")
    async def hero_rotation(kind: str) -> dict[str, Any]:
        normalized = _parse_kind(kind)
        pipeline = get_hero_pipeline(fastapi_app)
        payload = pipeline.get_rotation_plan(normalized).to_payload()
        payload["autoplaySeconds"] = settings.autoplay_seconds
        return payload


app = create_app()
