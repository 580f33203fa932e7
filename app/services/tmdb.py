"""Client for The Movie Database (TMDB) catalog lookups."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..models import (
    CastMember,
    Genre,
    MediaDetails,
    MediaRecord,
    Person,
    WatchProvider,
    records_from_hits,
)
from ..utils import parse_year

logger = logging.getLogger(__name__)

# Providers are listed subscription-first, then rental, purchase and ad-supported.
AVAILABILITY_ORDER: tuple[str, ...] = ("flatrate", "rent", "buy", "ads")


class TMDBClient:
    """Typed read-only wrapper around the TMDB v3 API.

    Every method treats transport failures, error statuses and malformed
    bodies as "no data": callers receive an empty list or empty details and
    a warning is logged. Nothing is retried.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client

    async def search_multi(self, term: str, language: str) -> list[dict[str, Any]]:
        """Return raw multi-search hits, each tagged with ``media_type``."""

        payload = await self._get(
            "/search/multi",
            params={"query": term, "language": language, "include_adult": "false"},
        )
        results = payload.get("results") if payload else None
        if not isinstance(results, list):
            return []
        return [hit for hit in results if isinstance(hit, dict)]

    async def get_watch_providers(
        self, media_id: int, media_type: str, region: str
    ) -> list[WatchProvider]:
        """Return providers for ``region``; empty when none are configured."""

        payload = await self._get(f"/{media_type}/{media_id}/watch/providers")
        results = payload.get("results") if payload else None
        if not isinstance(results, dict):
            return []
        region_data = results.get(region.upper())
        if not isinstance(region_data, dict):
            return []

        providers: list[WatchProvider] = []
        seen: set[int] = set()
        for availability in AVAILABILITY_ORDER:
            for entry in region_data.get(availability) or []:
                provider_id = entry.get("provider_id") if isinstance(entry, dict) else None
                if not isinstance(provider_id, int) or provider_id in seen:
                    continue
                seen.add(provider_id)
                providers.append(
                    WatchProvider(
                        provider_id=provider_id,
                        name=str(entry.get("provider_name") or ""),
                        logo_path=entry.get("logo_path"),
                        display_priority=entry.get("display_priority"),
                        availability_type=availability,
                    )
                )
        return providers

    async def get_credits(
        self, media_id: int, media_type: str, language: str
    ) -> list[CastMember]:
        """Return the top-billed cast, truncated to the configured limit."""

        payload = await self._get(
            f"/{media_type}/{media_id}/credits", params={"language": language}
        )
        cast = payload.get("cast") if payload else None
        if not isinstance(cast, list):
            return []

        members: list[CastMember] = []
        for entry in cast:
            if not isinstance(entry, dict) or not isinstance(entry.get("id"), int):
                continue
            members.append(
                CastMember(
                    id=entry["id"],
                    name=str(entry.get("name") or ""),
                    character=entry.get("character") or None,
                    profile_path=entry.get("profile_path"),
                    order=int(entry.get("order") or 0),
                )
            )
        members.sort(key=lambda member: member.order)
        return members[: self._settings.tmdb_cast_limit]

    async def get_details(
        self, media_id: int, media_type: str, language: str
    ) -> MediaDetails:
        """Return detail fields whose shape depends on ``media_type``."""

        payload = await self._get(f"/{media_type}/{media_id}", params={"language": language})
        if not payload:
            return MediaDetails()

        genres = [
            Genre(id=genre["id"], name=str(genre.get("name") or ""))
            for genre in payload.get("genres") or []
            if isinstance(genre, dict) and isinstance(genre.get("id"), int)
        ]
        tagline = payload.get("tagline") or None

        if media_type == "movie":
            return MediaDetails(
                genres=genres,
                tagline=tagline,
                runtime=payload.get("runtime") or None,
                release_year=parse_year(payload.get("release_date")),
            )

        run_times = [
            value for value in payload.get("episode_run_time") or [] if isinstance(value, int)
        ]
        return MediaDetails(
            genres=genres,
            tagline=tagline,
            number_of_seasons=payload.get("number_of_seasons"),
            number_of_episodes=payload.get("number_of_episodes"),
            episode_run_time=round(sum(run_times) / len(run_times)) if run_times else None,
            status=payload.get("status") or None,
            first_air_year=parse_year(payload.get("first_air_date")),
        )

    async def search_person(self, term: str, language: str) -> list[Person]:
        """Return actors matching ``term`` in catalog order."""

        payload = await self._get(
            "/search/person",
            params={"query": term, "language": language, "include_adult": "false"},
        )
        results = payload.get("results") if payload else None
        if not isinstance(results, list):
            return []

        people: list[Person] = []
        for entry in results:
            if not isinstance(entry, dict) or not isinstance(entry.get("id"), int):
                continue
            department = entry.get("known_for_department")
            if department and department != "Acting":
                continue
            known_for = [
                str(work.get("title") or work.get("name"))
                for work in entry.get("known_for") or []
                if isinstance(work, dict) and (work.get("title") or work.get("name"))
            ]
            people.append(
                Person(
                    id=entry["id"],
                    name=str(entry.get("name") or ""),
                    profile_path=entry.get("profile_path"),
                    known_for_department=department,
                    popularity=float(entry.get("popularity") or 0.0),
                    known_for=known_for[:3],
                )
            )
        return people

    async def get_person_credits(
        self, person_id: int, media_types: frozenset[str], language: str
    ) -> list[MediaRecord]:
        """Return an actor's acting credits of ``media_types``, most popular first.

        A title the actor appears in more than once (several roles, several
        seasons) is listed once.
        """

        payload = await self._get(
            f"/person/{person_id}/combined_credits", params={"language": language}
        )
        cast = payload.get("cast") if payload else None
        if not isinstance(cast, list):
            return []

        records: list[MediaRecord] = []
        seen: set[str] = set()
        for record in records_from_hits(
            (entry for entry in cast if isinstance(entry, dict)), media_types
        ):
            if record.key in seen:
                continue
            seen.add(record.key)
            records.append(record)
        records.sort(key=lambda record: record.popularity, reverse=True)
        return records

    async def get_available_providers(self, region: str) -> list[WatchProvider]:
        """Return the provider directory for ``region`` by display priority."""

        region = region.upper()
        payload = await self._get("/watch/providers/movie", params={"watch_region": region})
        results = payload.get("results") if payload else None
        if not isinstance(results, list):
            return []

        ranked: list[tuple[int, WatchProvider]] = []
        for entry in results:
            if not isinstance(entry, dict) or not isinstance(entry.get("provider_id"), int):
                continue
            priorities = entry.get("display_priorities") or {}
            priority = priorities.get(region) if isinstance(priorities, dict) else None
            if priority is None:
                continue
            ranked.append(
                (
                    priority,
                    WatchProvider(
                        provider_id=entry["provider_id"],
                        name=str(entry.get("provider_name") or ""),
                        logo_path=entry.get("logo_path"),
                        display_priority=priority,
                    ),
                )
            )
        ranked.sort(key=lambda pair: pair[0])
        return [provider for _, provider in ranked]

    async def _get(
        self, endpoint: str, *, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        query = dict(params or {})
        query["api_key"] = self._settings.tmdb_api_key
        try:
            response = await self._client.get(endpoint, params=query)
        except httpx.HTTPError as exc:
            logger.warning("TMDB request to %s failed: %s", endpoint, exc)
            return {}
        if response.status_code >= 400:
            logger.warning(
                "TMDB request to %s failed with %s: %s",
                endpoint,
                response.status_code,
                response.text,
            )
            return {}
        try:
            payload = response.json()
        except ValueError:
            logger.warning("TMDB returned an invalid JSON body for %s", endpoint)
            return {}
        if not isinstance(payload, dict):
            return {}
        return payload
