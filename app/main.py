"""Entry point for the FastAPI-powered recommendation service."""

from __future__ import annotations

import logging
import math
from contextlib import AsyncExitStack, asynccontextmanager

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import normalize_language, settings
from .database import Database
from .models import RecommendationRequest
from .rate_limit import RequestThrottle
from .services.enrichment import EnrichmentAggregator
from .services.entitlements import EntitlementGate, SqlUsageStore
from .services.openrouter import OpenRouterClient
from .services.recommendations import (
    GenerationError,
    InvalidRequestError,
    RecommendationService,
)
from .services.resolver import TitleResolver
from .services.revenuecat import RevenueCatClient
from .services.tmdb import TMDBClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MIN_ACTOR_QUERY_LENGTH = 2
MAX_ACTOR_QUERY_LENGTH = 100

app: FastAPI


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    openrouter_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.openrouter_api_url),
            timeout=httpx.Timeout(60.0, connect=10.0),
        )
    )
    revenuecat_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.revenuecat_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    tmdb = TMDBClient(settings, tmdb_http_client)
    recommendation_service = RecommendationService(
        settings,
        OpenRouterClient(settings, openrouter_http_client),
        TitleResolver(tmdb),
        EnrichmentAggregator(tmdb),
        tmdb,
    )
    revenuecat = (
        RevenueCatClient(settings, revenuecat_http_client)
        if settings.revenuecat_api_key
        else None
    )
    if revenuecat is None:
        logger.warning("REVENUECAT_API_KEY not set; every user is treated as free")
    entitlement_gate = EntitlementGate(
        settings, revenuecat, SqlUsageStore(database.session_factory)
    )

    app.state.tmdb = tmdb
    app.state.request_throttle = RequestThrottle.from_settings(settings)
    app.state.recommendation_service = recommendation_service
    app.state.entitlement_gate = entitlement_gate
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await entitlement_gate.wait_for_mirrors()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Mood-based movie and TV recommendations with streaming availability",
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


def get_recommendation_service(app: FastAPI) -> RecommendationService:
    service = getattr(app.state, "recommendation_service", None)
    if not isinstance(service, RecommendationService):
        raise RuntimeError("Recommendation service not initialised")
    return service


def get_entitlement_gate(app: FastAPI) -> EntitlementGate:
    gate = getattr(app.state, "entitlement_gate", None)
    if not isinstance(gate, EntitlementGate):
        raise RuntimeError("Entitlement gate not initialised")
    return gate


def get_tmdb_client(app: FastAPI) -> TMDBClient:
    tmdb = getattr(app.state, "tmdb", None)
    if not isinstance(tmdb, TMDBClient):
        raise RuntimeError("TMDB client not initialised")
    return tmdb


def get_request_throttle(app: FastAPI) -> RequestThrottle:
    throttle = getattr(app.state, "request_throttle", None)
    if not isinstance(throttle, RequestThrottle):
        raise RuntimeError("Request throttle not initialised")
    return throttle


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else "unknown"


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/recommendations")
    async def recommendations(
        request: Request, x_user_id: str | None = Header(default=None)
    ) -> JSONResponse:
        user_id = (x_user_id or "").strip()
        if not user_id:
            raise HTTPException(status_code=401, detail="X-User-Id header is required")

        throttle = get_request_throttle(fastapi_app)
        limited = await throttle.check(client_address(request), user_id)
        if limited is not None:
            retry_after, limit = limited
            logger.info("Rate limit reached for %s", user_id)
            return JSONResponse(
                {"error": "Rate limit exceeded", "retryAfter": math.ceil(retry_after)},
                status_code=429,
                headers={
                    "Retry-After": str(math.ceil(retry_after)),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid payload") from exc
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        try:
            payload = RecommendationRequest.model_validate(body)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc

        gate = get_entitlement_gate(fastapi_app)
        decision = await gate.check(user_id)
        if not decision.allowed:
            logger.info("Access denied for %s: %s", user_id, decision.reason)
            raise HTTPException(status_code=402, detail=decision.to_payload())

        service = get_recommendation_service(fastapi_app)
        try:
            result = await service.recommend(payload)
        except InvalidRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except GenerationError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        await gate.record_invocation(user_id)
        return JSONResponse(result.to_response())

    @fastapi_app.get("/api/entitlements/{user_id}")
    async def entitlement_status(user_id: str) -> JSONResponse:
        gate = get_entitlement_gate(fastapi_app)
        decision = await gate.check(user_id)
        counter = await gate.usage(user_id)
        payload = decision.to_payload()
        payload.update(
            {
                "promptsUsed": counter.count,
                "maxFreePrompts": gate.max_free_invocations,
                "currentMonth": counter.period_key,
            }
        )
        return JSONResponse(payload)

    @fastapi_app.get("/api/providers")
    async def available_providers(region: str | None = None) -> JSONResponse:
        tmdb = get_tmdb_client(fastapi_app)
        resolved_region = (region or settings.default_region).strip().upper()
        if len(resolved_region) != 2:
            raise HTTPException(status_code=400, detail="region must be a two-letter code")
        providers = await tmdb.get_available_providers(resolved_region)
        return JSONResponse(
            {
                "region": resolved_region,
                "providers": [provider.model_dump(mode="json") for provider in providers],
            }
        )

    @fastapi_app.get("/api/actors")
    async def search_actors(
        query: str = "",
        language: str | None = None,
        x_user_id: str | None = Header(default=None),
    ) -> JSONResponse:
        if not (x_user_id or "").strip():
            raise HTTPException(status_code=401, detail="X-User-Id header is required")
        term = query.strip()
        if not MIN_ACTOR_QUERY_LENGTH <= len(term) <= MAX_ACTOR_QUERY_LENGTH:
            raise HTTPException(
                status_code=400,
                detail=(
                    f"query must be {MIN_ACTOR_QUERY_LENGTH}-"
                    f"{MAX_ACTOR_QUERY_LENGTH} characters"
                ),
            )
        resolved_language = normalize_language(
            language, default=settings.default_language
        )
        people = await get_tmdb_client(fastapi_app).search_person(term, resolved_language)
        return JSONResponse(
            {
                "actors": [person.model_dump(mode="json") for person in people],
                "totalResults": len(people),
            }
        )


app = create_app()
