"""Entry point for the FastAPI-powered recommendation queue service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import settings
from .models import PreferenceSet
from .services.catalog_source import TransientCatalogError
from .services.recommendation_engine import RecommendationEngine
from .services.sessions import SessionRegistry
from .services.tmdb import TMDBClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url).rstrip("/") + "/",
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    tmdb = TMDBClient(settings, tmdb_http_client)
    registry = SessionRegistry(settings, tmdb)
    fastapi_app.state.sessions = registry

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await registry.aclose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Shared swipe queues of movies filtered by genre, year, rating and provider",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_session_registry(app: FastAPI) -> SessionRegistry:
    registry = getattr(app.state, "sessions", None)
    if not isinstance(registry, SessionRegistry):
        raise RuntimeError("Session registry not initialised")
    return registry


def register_routes(fastapi_app: FastAPI) -> None:
    async def _read_preferences(request: Request) -> PreferenceSet:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            payload = {}
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        try:
            return PreferenceSet.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400, detail=json.loads(exc.json(include_url=False))
            ) from exc

    def _existing_engine(session_id: str) -> RecommendationEngine:
        engine = get_session_registry(fastapi_app).find(session_id)
        if engine is None:
            raise HTTPException(status_code=404, detail=f"Unknown session {session_id}")
        return engine

    def _tmdb() -> TMDBClient:
        source = get_session_registry(fastapi_app).source
        if not isinstance(source, TMDBClient):
            raise HTTPException(status_code=503, detail="Catalog lookups unavailable")
        return source

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/sessions/{session_id}/queue")
    async def queue_status(session_id: str) -> JSONResponse:
        engine = _existing_engine(session_id)
        return JSONResponse(engine.snapshot().to_payload())

    @fastapi_app.post("/sessions/{session_id}/queue/initialize")
    async def initialize_queue(request: Request, session_id: str) -> JSONResponse:
        preferences = await _read_preferences(request)
        engine = await get_session_registry(fastapi_app).get(session_id)
        await engine.initialize(preferences)
        return JSONResponse(engine.snapshot().to_payload())

    @fastapi_app.put("/sessions/{session_id}/preferences")
    async def update_preferences(request: Request, session_id: str) -> JSONResponse:
        preferences = await _read_preferences(request)
        engine = await get_session_registry(fastapi_app).get(session_id)
        await engine.update_preferences(preferences)
        return JSONResponse(engine.snapshot().to_payload())

    @fastapi_app.post("/sessions/{session_id}/queue/next")
    async def next_item(session_id: str) -> JSONResponse:
        engine = _existing_engine(session_id)
        item = await engine.consume()
        payload: dict[str, Any] = {
            "item": item.model_dump(mode="json") if item is not None else None,
            "queue": engine.snapshot().to_payload(),
        }
        return JSONResponse(payload)

    @fastapi_app.delete("/sessions/{session_id}/queue/error")
    async def clear_error(session_id: str) -> JSONResponse:
        engine = _existing_engine(session_id)
        engine.clear_error()
        return JSONResponse(engine.snapshot().to_payload())

    @fastapi_app.post("/sessions/{session_id}/queue/reset")
    async def reset_queue(session_id: str) -> JSONResponse:
        engine = _existing_engine(session_id)
        await engine.reset()
        return JSONResponse(engine.snapshot().to_payload())

    @fastapi_app.delete("/sessions/{session_id}")
    async def drop_session(session_id: str) -> dict[str, bool]:
        dropped = await get_session_registry(fastapi_app).drop(session_id)
        if not dropped:
            raise HTTPException(status_code=404, detail=f"Unknown session {session_id}")
        return {"dropped": True}

    @fastapi_app.get("/genres")
    async def list_genres(request: Request) -> JSONResponse:
        media_type = request.query_params.get("contentType", "movie").lower()
        if media_type not in {"movie", "tv"}:
            raise HTTPException(status_code=400, detail="Unsupported content type")
        try:
            genres = await _tmdb().fetch_genres(media_type)  # type: ignore[arg-type]
        except TransientCatalogError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse([genre.model_dump(mode="json") for genre in genres])

    @fastapi_app.get("/providers")
    async def list_providers() -> JSONResponse:
        providers = await _tmdb().fetch_popular_providers()
        return JSONResponse(
            [
                {**provider.model_dump(mode="json"), "logo_url": provider.logo_url()}
                for provider in providers
            ]
        )


app = create_app()
