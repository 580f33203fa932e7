from __future__ import annotations

from typing import Any

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import register_routes
from app.models import MediaRecord, Person, WatchProvider
from app.rate_limit import RequestThrottle, SlidingWindowRateLimiter
from app.services.enrichment import EnrichmentAggregator
from app.services.entitlements import (
    EntitlementGate,
    EntitlementInfo,
    UsageCounter,
)
from app.services.recommendations import RecommendationService
from app.services.resolver import TitleResolver
from app.services.tmdb import TMDBClient
from fakes import (
    FakeCatalog,
    FakeEntitlementBackend,
    FakeGenerator,
    InMemoryUsageStore,
    media_hit,
)


class _StubTMDB(TMDBClient):
    def __init__(self) -> None:
        self.regions: list[str] = []
        self.person_searches: list[tuple[str, str]] = []

    async def get_available_providers(self, region: str) -> list[WatchProvider]:
        self.regions.append(region)
        return [WatchProvider(provider_id=8, name="Netflix", display_priority=1)]

    async def search_person(self, term: str, language: str) -> list[Person]:
        self.person_searches.append((term, language))
        return [Person(id=6384, name="Keanu Reeves", known_for=["The Matrix"])]


def build_app(
    generator: FakeGenerator,
    *,
    store: InMemoryUsageStore | None = None,
    backend: FakeEntitlementBackend | None = None,
    throttle: RequestThrottle | None = None,
) -> tuple[FastAPI, InMemoryUsageStore]:
    settings = Settings(_env_file=None, MAX_FREE_PROMPTS=3)
    catalog = FakeCatalog(
        {"Heat": [media_hit(949, "Heat")], "Ronin": [media_hit(8195, "Ronin")]},
        providers={949: [WatchProvider(provider_id=8, name="Netflix")]},
        filmographies={6384: [MediaRecord.from_search_hit(media_hit(949, "Heat"))]},
    )
    store = store or InMemoryUsageStore()

    app = FastAPI()
    register_routes(app)
    app.state.recommendation_service = RecommendationService(
        settings,
        generator,
        TitleResolver(catalog),
        EnrichmentAggregator(catalog),
        catalog,
    )
    app.state.entitlement_gate = EntitlementGate(settings, backend, store)
    app.state.tmdb = _StubTMDB()
    app.state.request_throttle = throttle or RequestThrottle.from_settings(settings)
    return app, store


def _post(
    client: TestClient,
    payload: Any,
    user: str | None = "user-1",
    address: str | None = None,
) -> httpx.Response:
    headers = {"X-User-Id": user} if user else {}
    if address:
        headers["X-Forwarded-For"] = address
    return client.post("/api/recommendations", json=payload, headers=headers)


def test_healthcheck() -> None:
    app, _ = build_app(FakeGenerator())

    with TestClient(app) as client:
        response = client.get("/healthz")

    assert response.json() == {"status": "ok"}


def test_recommendations_require_user_header() -> None:
    app, _ = build_app(FakeGenerator(["Heat"]))

    with TestClient(app) as client:
        response = _post(client, {"query": "crime"}, user=None)

    assert response.status_code == 401


def test_recommendations_return_enriched_payload_and_count_usage() -> None:
    app, store = build_app(FakeGenerator(["Heat", "Ronin"], reply="Two heist films."))

    with TestClient(app) as client:
        response = _post(client, {"query": "heist", "country": "fr", "includeTvShows": False})

    assert response.status_code == 200
    payload = response.json()
    assert [item["key"] for item in payload["recommendations"]] == ["movie:949", "movie:8195"]
    assert payload["streamingProviders"]["movie:949"][0]["name"] == "Netflix"
    assert payload["credits"]["movie:8195"][0]["name"] == "Lead Actor"
    assert payload["conversationalResponse"] == "Two heist films."
    assert payload["totalResults"] == 2
    assert store.counters["user-1"].count == 1


def test_exhausted_quota_returns_payment_required() -> None:
    store = InMemoryUsageStore()
    generator = FakeGenerator(["Heat"])
    app, _ = build_app(generator, store=store)
    # The counter is read for the current month, whichever it is.
    with TestClient(app) as client:
        period = client.get("/api/entitlements/user-1").json()["currentMonth"]
        store.counters["user-1"] = UsageCounter("user-1", period, 3)
        response = _post(client, {"query": "crime"})

    assert response.status_code == 402
    assert response.json()["detail"]["reason"] == "monthly_limit_reached"
    assert generator.calls == []


def test_active_subscribers_are_not_counted() -> None:
    backend = FakeEntitlementBackend(EntitlementInfo(active_entitlements=["pro"]))
    app, store = build_app(FakeGenerator(["Heat"]), backend=backend)

    with TestClient(app) as client:
        response = _post(client, {"query": "crime"})

    assert response.status_code == 200
    assert store.saves == 0


def test_invalid_request_returns_bad_request_without_counting() -> None:
    generator = FakeGenerator(["Heat"])
    app, store = build_app(generator)

    with TestClient(app) as client:
        blank = _post(client, {"query": "  "})
        no_types = _post(
            client, {"query": "crime", "includeMovies": False, "includeTvShows": False}
        )
        malformed = _post(client, {"query": "crime", "desiredCount": 500})

    assert blank.status_code == 400
    assert blank.json()["detail"] == "Search query cannot be empty"
    assert no_types.status_code == 400
    assert malformed.status_code == 400
    assert generator.calls == []
    assert store.saves == 0


def test_generation_failure_returns_bad_gateway_without_counting() -> None:
    app, store = build_app(FakeGenerator(error=RuntimeError("model unavailable")))

    with TestClient(app) as client:
        response = _post(client, {"query": "crime"})

    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to generate AI recommendations"
    assert store.saves == 0


def test_entitlement_status_reports_usage() -> None:
    app, _ = build_app(FakeGenerator(["Heat"]))

    with TestClient(app) as client:
        _post(client, {"query": "crime"})
        response = client.get("/api/entitlements/user-1")

    payload = response.json()
    assert payload["allowed"] is True
    assert payload["state"] == "free"
    assert payload["remaining"] == 2
    assert payload["promptsUsed"] == 1
    assert payload["maxFreePrompts"] == 3


def test_provider_directory_normalises_region() -> None:
    app, _ = build_app(FakeGenerator())

    with TestClient(app) as client:
        response = client.get("/api/providers", params={"region": "us"})
        invalid = client.get("/api/providers", params={"region": "USA"})

    assert response.json() == {
        "region": "US",
        "providers": [
            {
                "provider_id": 8,
                "name": "Netflix",
                "logo_path": None,
                "display_priority": 1,
                "availability_type": "flatrate",
            }
        ],
    }
    assert app.state.tmdb.regions == ["US"]
    assert invalid.status_code == 400


def test_recommendations_are_rate_limited_per_user() -> None:
    generator = FakeGenerator(["Heat"])
    throttle = RequestThrottle(
        SlidingWindowRateLimiter(10, 60), SlidingWindowRateLimiter(2, 60)
    )
    app, _ = build_app(generator, throttle=throttle)

    with TestClient(app) as client:
        first = _post(client, {"query": "crime"})
        second = _post(client, {"query": "crime"})
        limited = _post(client, {"query": "crime"})
        other_user = _post(client, {"query": "crime"}, user="user-2")

    assert [first.status_code, second.status_code] == [200, 200]
    assert limited.status_code == 429
    assert limited.headers["Retry-After"] == "60"
    assert limited.headers["X-RateLimit-Limit"] == "2"
    assert limited.json() == {"error": "Rate limit exceeded", "retryAfter": 60}
    assert other_user.status_code == 200
    assert len(generator.calls) == 3


def test_recommendations_are_rate_limited_per_address() -> None:
    throttle = RequestThrottle(
        SlidingWindowRateLimiter(1, 60), SlidingWindowRateLimiter(10, 60)
    )
    app, store = build_app(FakeGenerator(["Heat"]), throttle=throttle)

    with TestClient(app) as client:
        first = _post(client, {"query": "crime"}, address="203.0.113.7, 10.0.0.1")
        same_address = _post(client, {"query": "crime"}, user="user-2", address="203.0.113.7")
        other_address = _post(client, {"query": "crime"}, user="user-2", address="198.51.100.4")

    assert first.status_code == 200
    assert same_address.status_code == 429
    assert other_address.status_code == 200
    assert store.counters["user-2"].count == 1


def test_actor_search_returns_people() -> None:
    app, _ = build_app(FakeGenerator())

    with TestClient(app) as client:
        response = client.get(
            "/api/actors",
            params={"query": " Keanu ", "language": "fr"},
            headers={"X-User-Id": "user-1"},
        )

    assert response.status_code == 200
    assert response.json() == {
        "actors": [
            {
                "id": 6384,
                "name": "Keanu Reeves",
                "profile_path": None,
                "known_for_department": None,
                "popularity": 0.0,
                "known_for": ["The Matrix"],
            }
        ],
        "totalResults": 1,
    }
    assert app.state.tmdb.person_searches == [("Keanu", "fr-FR")]


def test_actor_search_validates_query_and_user() -> None:
    app, _ = build_app(FakeGenerator())

    with TestClient(app) as client:
        anonymous = client.get("/api/actors", params={"query": "Keanu"})
        too_short = client.get(
            "/api/actors", params={"query": "K"}, headers={"X-User-Id": "user-1"}
        )
        too_long = client.get(
            "/api/actors", params={"query": "K" * 101}, headers={"X-User-Id": "user-1"}
        )

    assert anonymous.status_code == 401
    assert too_short.status_code == 400
    assert too_long.status_code == 400
    assert app.state.tmdb.person_searches == []


def test_actor_ids_narrow_recommendations() -> None:
    app, _ = build_app(FakeGenerator(["Heat", "Ronin"]))

    with TestClient(app) as client:
        narrowed = _post(client, {"query": "crime", "actorIds": [6384]})
        too_many = _post(client, {"query": "crime", "actorIds": [1, 2, 3, 4, 5, 6]})

    assert [item["key"] for item in narrowed.json()["recommendations"]] == ["movie:949"]
    assert too_many.status_code == 400
