"""High level orchestration for recommendation requests."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

from ..config import Settings
from ..models import (
    EnrichmentBundle,
    GenerationResult,
    MediaRecord,
    RecommendationRequest,
    ResolvedRecommendationSet,
    WatchProvider,
)
from ..utils import normalize_platform_name
from .enrichment import EnrichmentAggregator
from .resolver import TitleResolver

logger = logging.getLogger(__name__)

# Narrowing by platforms the user named is skipped when it would keep fewer
# than this share of the resolved records.
PLATFORM_RETENTION_THRESHOLD = 0.3

# Narrowing by actor is used as-is once this many records match; below it the
# first actor's other titles top the list up.
ACTOR_MATCH_MINIMUM = 5


class RecommendationError(RuntimeError):
    """Base class for errors that abort a recommendation request."""


class InvalidRequestError(RecommendationError, ValueError):
    """Raised when a request is rejected before any collaborator is called."""


class GenerationError(RecommendationError):
    """Raised when the recommendation generator cannot produce titles."""


class RecommendationGenerator(Protocol):
    async def generate(
        self,
        query: str,
        *,
        count: int,
        content_types: Sequence[str],
        language: str,
        region: str,
        year_from: int | None = None,
        year_to: int | None = None,
    ) -> GenerationResult:
        ...


class FilmographySource(Protocol):
    async def get_person_credits(
        self, person_id: int, media_types: frozenset[str], language: str
    ) -> list[MediaRecord]:
        ...


class RecommendationService:
    """Turn a free-text request into enriched, ordered catalog records."""

    def __init__(
        self,
        settings: Settings,
        generator: RecommendationGenerator,
        resolver: TitleResolver,
        aggregator: EnrichmentAggregator,
        filmography: FilmographySource,
    ):
        self._settings = settings
        self._generator = generator
        self._resolver = resolver
        self._aggregator = aggregator
        self._filmography = filmography

    async def recommend(self, request: RecommendationRequest) -> ResolvedRecommendationSet:
        """Run the full pipeline for one request.

        Only validation and generation failures propagate. Titles that fail to
        resolve are dropped; any other failed lookup only leaves data empty.
        """

        problem = request.validation_problem()
        if problem:
            raise InvalidRequestError(problem)

        language = request.language or self._settings.default_language
        region = request.region or self._settings.default_region
        count = request.desired_count or self._settings.recommendation_count

        try:
            generated = await self._generator.generate(
                request.query.strip(),
                count=count,
                content_types=request.content_type_labels(),
                language=language,
                region=region,
                year_from=request.year_from,
                year_to=request.year_to,
            )
        except Exception as exc:
            logger.warning("Recommendation generation failed: %s", exc)
            raise GenerationError("Failed to generate AI recommendations") from exc

        resolved = await self._resolve_titles(generated.titles, request, language)
        records = self._select_records(resolved, limit=count)
        records = await self._apply_actor_filter(
            records, request, language, limit=count
        )
        bundles = await self._aggregator.enrich_many(
            records, region=region, language=language
        )
        records, bundles = self._apply_availability_filters(records, bundles, request)
        records = self._apply_detected_platforms(
            records, bundles, generated.detected_platforms
        )

        logger.info(
            "Resolved %d/%d generated titles into %d recommendations",
            sum(1 for record in resolved if record is not None),
            len(generated.titles),
            len(records),
        )
        return ResolvedRecommendationSet(
            records=records,
            bundles={record.key: bundles[record.key] for record in records},
            reply=generated.reply,
            detected_platforms=generated.detected_platforms,
        )

    async def _resolve_titles(
        self,
        titles: Sequence[str],
        request: RecommendationRequest,
        language: str,
    ) -> list[MediaRecord | None]:
        languages = self._settings.fallback_languages(language)

        async def _resolve(title: str) -> MediaRecord | None:
            try:
                return await self._resolver.resolve(
                    title,
                    include_movies=request.include_movies,
                    include_tv_shows=request.include_tv_shows,
                    languages=languages,
                )
            except Exception as exc:
                logger.warning("Title resolution failed for %r: %s", title, exc)
                return None

        # gather() returns results in argument order, not completion order.
        return list(await asyncio.gather(*(_resolve(title) for title in titles)))

    @staticmethod
    def _select_records(
        resolved: Sequence[MediaRecord | None], *, limit: int
    ) -> list[MediaRecord]:
        """Drop misses and incomplete records; first occurrence of an identity wins."""

        selected: list[MediaRecord] = []
        seen: set[str] = set()
        for record in resolved:
            if record is None or not record.has_required_fields():
                continue
            if record.key in seen:
                continue
            seen.add(record.key)
            selected.append(record)
            if len(selected) >= limit:
                break
        return selected

    async def _apply_actor_filter(
        self,
        records: list[MediaRecord],
        request: RecommendationRequest,
        language: str,
        *,
        limit: int,
    ) -> list[MediaRecord]:
        """Keep records featuring every requested actor.

        When fewer than ``ACTOR_MATCH_MINIMUM`` records match, the list is
        filled up to ``limit`` with the first actor's most popular other
        titles. A filmography that cannot be fetched counts as empty.
        """

        actor_ids = list(dict.fromkeys(request.actor_ids))
        if not actor_ids:
            return records

        media_types = request.media_types()
        results = await asyncio.gather(
            *(
                self._filmography.get_person_credits(actor_id, media_types, language)
                for actor_id in actor_ids
            ),
            return_exceptions=True,
        )
        filmographies: list[list[MediaRecord]] = []
        for actor_id, result in zip(actor_ids, results):
            if isinstance(result, BaseException):
                logger.warning("Filmography lookup failed for actor %s: %s", actor_id, result)
                filmographies.append([])
            else:
                filmographies.append(list(result))

        shared = set.intersection(
            *({record.key for record in credits} for credits in filmographies)
        )
        filtered = [record for record in records if record.key in shared]
        logger.info(
            "Actor filter narrowed %d -> %d recommendations", len(records), len(filtered)
        )
        if len(filtered) >= ACTOR_MATCH_MINIMUM:
            return filtered

        present = {record.key for record in filtered}
        extras: list[MediaRecord] = []
        for record in filmographies[0]:
            if len(filtered) + len(extras) >= limit:
                break
            if record.key in present or not record.has_required_fields():
                continue
            present.add(record.key)
            extras.append(record)
        logger.info("Added %d titles from the actor's filmography", len(extras))
        return filtered + extras

    @staticmethod
    def _apply_availability_filters(
        records: list[MediaRecord],
        bundles: dict[str, EnrichmentBundle],
        request: RecommendationRequest,
    ) -> tuple[list[MediaRecord], dict[str, EnrichmentBundle]]:
        """Restrict providers to the requested availability types and platforms."""

        has_availability = request.has_availability_filters()
        if not (has_availability or request.platforms):
            return records, bundles

        allowed_types = {"flatrate", "ads"} if request.include_flatrate is not False else set()
        if request.include_rent:
            allowed_types.add("rent")
        if request.include_buy:
            allowed_types.add("buy")
        platform_ids = set(request.platforms)

        def _keep(provider: WatchProvider) -> bool:
            if has_availability and provider.availability_type not in allowed_types:
                return False
            if platform_ids and provider.provider_id not in platform_ids:
                return False
            return True

        kept_records: list[MediaRecord] = []
        narrowed: dict[str, EnrichmentBundle] = {}
        for record in records:
            bundle = bundles[record.key]
            providers = [provider for provider in bundle.providers if _keep(provider)]
            if not providers:
                continue
            kept_records.append(record)
            narrowed[record.key] = bundle.model_copy(update={"providers": providers})
        logger.info(
            "Availability preferences narrowed %d -> %d recommendations",
            len(records),
            len(kept_records),
        )
        return kept_records, narrowed

    @staticmethod
    def _apply_detected_platforms(
        records: list[MediaRecord],
        bundles: dict[str, EnrichmentBundle],
        platforms: Sequence[str],
    ) -> list[MediaRecord]:
        """Keep records streaming on a platform the user named, if enough remain."""

        requested = [normalize_platform_name(name) for name in platforms]
        requested = [name for name in requested if name]
        if not requested or not records:
            return records

        def _matches(record: MediaRecord) -> bool:
            for provider in bundles[record.key].providers:
                offered = normalize_platform_name(provider.name)
                if not offered:
                    continue
                if any(name in offered or offered in name for name in requested):
                    return True
            return False

        filtered = [record for record in records if _matches(record)]
        retention = len(filtered) / len(records)
        if not filtered or retention < PLATFORM_RETENTION_THRESHOLD:
            logger.info(
                "Platform filtering would keep %d of %d recommendations; keeping all",
                len(filtered),
                len(records),
            )
            return records
        return filtered
