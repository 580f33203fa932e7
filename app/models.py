"""Pydantic models describing recommendation payloads."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import normalize_language

logger = logging.getLogger(__name__)

MediaType = Literal["movie", "tv"]
AvailabilityType = Literal["flatrate", "rent", "buy", "ads"]


def record_key(media_type: str, media_id: int) -> str:
    """Return the identity key used to index enrichment bundles."""

    return f"{media_type}:{media_id}"


def allowed_media_types(include_movies: bool, include_tv_shows: bool) -> frozenset[str]:
    """Return the catalog media types selected by the content filters."""

    allowed: set[str] = set()
    if include_movies:
        allowed.add("movie")
    if include_tv_shows:
        allowed.add("tv")
    return frozenset(allowed)


class RecommendationRequest(BaseModel):
    """A user's free-text request and the constraints that travel with it.

    The model is intentionally permissive: a blank query or a request with no
    content type selected still parses, so the pipeline can reject it with a
    proper error before contacting any collaborator.
    """

    model_config = ConfigDict(populate_by_name=True)

    query: str = ""
    desired_count: int | None = Field(
        default=None, ge=1, le=50, alias="desiredCount"
    )
    include_movies: bool = Field(default=True, alias="includeMovies")
    include_tv_shows: bool = Field(default=True, alias="includeTvShows")
    region: str | None = Field(default=None, alias="country")
    language: str | None = None
    year_from: int | None = Field(default=None, alias="yearFrom")
    year_to: int | None = Field(default=None, alias="yearTo")
    include_flatrate: bool | None = Field(default=None, alias="includeFlatrate")
    include_rent: bool | None = Field(default=None, alias="includeRent")
    include_buy: bool | None = Field(default=None, alias="includeBuy")
    platforms: list[int] = Field(default_factory=list)
    actor_ids: list[int] = Field(default_factory=list, alias="actorIds", max_length=5)

    @field_validator("region", mode="before")
    @classmethod
    def _normalize_region(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip().upper()
            return stripped or None
        return value

    @field_validator("language", mode="before")
    @classmethod
    def _normalize_language(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return normalize_language(stripped) if stripped else None
        return value

    def validation_problem(self) -> str | None:
        """Return a user-facing reason the request cannot run, if any."""

        if not self.query.strip():
            return "Search query cannot be empty"
        if not (self.include_movies or self.include_tv_shows):
            return "At least one content type (movies or TV shows) must be selected"
        if (
            self.year_from is not None
            and self.year_to is not None
            and self.year_from > self.year_to
        ):
            return "yearFrom must not be after yearTo"
        return None

    def content_type_labels(self) -> list[str]:
        labels: list[str] = []
        if self.include_movies:
            labels.append("movies")
        if self.include_tv_shows:
            labels.append("TV shows")
        return labels

    def media_types(self) -> frozenset[str]:
        return allowed_media_types(self.include_movies, self.include_tv_shows)

    def has_availability_filters(self) -> bool:
        return any(
            flag is not None
            for flag in (self.include_flatrate, self.include_rent, self.include_buy)
        )


class MediaRecord(BaseModel):
    """A catalog entry resolved from one generated title."""

    model_config = ConfigDict(frozen=True)

    id: int
    media_type: MediaType
    title: str = ""
    original_title: str | None = None
    overview: str = ""
    poster_path: str | None = None
    backdrop_path: str | None = None
    release_date: str | None = None
    first_air_date: str | None = None
    vote_average: float = 0.0
    vote_count: int = 0
    popularity: float = 0.0
    genre_ids: tuple[int, ...] = ()

    @classmethod
    def from_search_hit(cls, hit: dict[str, Any]) -> "MediaRecord":
        """Build a record from a raw multi-search hit."""

        media_type = hit.get("media_type")
        is_movie = media_type == "movie"
        title = hit.get("title") if is_movie else hit.get("name")
        original = hit.get("original_title") if is_movie else hit.get("original_name")
        return cls(
            id=int(hit["id"]),
            media_type="movie" if is_movie else "tv",
            title=str(title or hit.get("title") or hit.get("name") or ""),
            original_title=str(original) if original else None,
            overview=str(hit.get("overview") or ""),
            poster_path=hit.get("poster_path") or None,
            backdrop_path=hit.get("backdrop_path") or None,
            release_date=(hit.get("release_date") or None) if is_movie else None,
            first_air_date=None if is_movie else (hit.get("first_air_date") or None),
            vote_average=float(hit.get("vote_average") or 0.0),
            vote_count=int(hit.get("vote_count") or 0),
            popularity=float(hit.get("popularity") or 0.0),
            genre_ids=tuple(hit.get("genre_ids") or ()),
        )

    @property
    def key(self) -> str:
        return record_key(self.media_type, self.id)

    @property
    def relevance(self) -> float:
        """Popularity-weighted rating used to rank search hits."""

        return self.vote_average * self.vote_count

    def has_required_fields(self) -> bool:
        return bool(self.id) and bool(self.title.strip()) and bool(self.overview.strip())


def records_from_hits(
    hits: Iterable[dict[str, Any]], allowed: frozenset[str]
) -> list[MediaRecord]:
    """Build records from raw catalog hits of an allowed media type.

    Hits of other kinds (people, collections) and hits without an integer id
    are ignored; a malformed hit is logged and skipped.
    """

    records: list[MediaRecord] = []
    for hit in hits:
        if hit.get("media_type") not in allowed or not isinstance(hit.get("id"), int):
            continue
        try:
            records.append(MediaRecord.from_search_hit(hit))
        except (TypeError, ValueError, ValidationError) as exc:
            logger.debug("Skipping malformed catalog hit %s: %s", hit.get("id"), exc)
    return records


class WatchProvider(BaseModel):
    """A streaming service offering a title in a region."""

    provider_id: int
    name: str
    logo_path: str | None = None
    display_priority: int | None = None
    availability_type: AvailabilityType = "flatrate"


class CastMember(BaseModel):
    id: int
    name: str
    character: str | None = None
    profile_path: str | None = None
    order: int = 0


class Genre(BaseModel):
    id: int
    name: str


class Person(BaseModel):
    """An actor returned by the people search."""

    id: int
    name: str
    profile_path: str | None = None
    known_for_department: str | None = None
    popularity: float = 0.0
    known_for: list[str] = Field(default_factory=list)


class MediaDetails(BaseModel):
    """Detail lookup result; movie or TV fields are filled by media type."""

    genres: list[Genre] = Field(default_factory=list)
    tagline: str | None = None
    runtime: int | None = None
    release_year: int | None = None
    number_of_seasons: int | None = None
    number_of_episodes: int | None = None
    episode_run_time: int | None = None
    status: str | None = None
    first_air_year: int | None = None

    def is_empty(self) -> bool:
        return self == MediaDetails()


class EnrichmentBundle(BaseModel):
    """Secondary lookups merged for one record."""

    providers: list[WatchProvider] = Field(default_factory=list)
    cast: list[CastMember] = Field(default_factory=list)
    details: MediaDetails = Field(default_factory=MediaDetails)


class GenerationResult(BaseModel):
    """Candidate titles and the conversational reply from the generator."""

    titles: list[str] = Field(default_factory=list)
    reply: str = ""
    detected_platforms: list[str] = Field(default_factory=list)


class ResolvedRecommendationSet(BaseModel):
    """Final output of one pipeline run."""

    records: list[MediaRecord] = Field(default_factory=list)
    bundles: dict[str, EnrichmentBundle] = Field(default_factory=dict)
    reply: str = ""
    detected_platforms: list[str] = Field(default_factory=list)

    @property
    def total_results(self) -> int:
        return len(self.records)

    def bundle_for(self, record: MediaRecord) -> EnrichmentBundle:
        """Return the bundle for ``record``, or an empty one."""

        return self.bundles.get(record.key) or EnrichmentBundle()

    def to_response(self) -> dict[str, object]:
        """Return the JSON payload sent back to clients."""

        return {
            "recommendations": [
                record.model_dump(mode="json") | {"key": record.key}
                for record in self.records
            ],
            "streamingProviders": {
                key: [provider.model_dump(mode="json") for provider in bundle.providers]
                for key, bundle in self.bundles.items()
            },
            "credits": {
                key: [member.model_dump(mode="json") for member in bundle.cast]
                for key, bundle in self.bundles.items()
            },
            "detailedInfo": {
                key: bundle.details.model_dump(mode="json", exclude_none=True)
                for key, bundle in self.bundles.items()
            },
            "conversationalResponse": self.reply,
            "detectedPlatforms": list(self.detected_platforms),
            "totalResults": self.total_results,
        }
