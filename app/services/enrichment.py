"""Fan-out of secondary catalog lookups for resolved records."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

from ..models import CastMember, EnrichmentBundle, MediaDetails, MediaRecord, WatchProvider

logger = logging.getLogger(__name__)


class CatalogLookups(Protocol):
    async def get_watch_providers(
        self, media_id: int, media_type: str, region: str
    ) -> list[WatchProvider]:
        ...

    async def get_credits(
        self, media_id: int, media_type: str, language: str
    ) -> list[CastMember]:
        ...

    async def get_details(
        self, media_id: int, media_type: str, language: str
    ) -> MediaDetails:
        ...


class EnrichmentAggregator:
    """Merge providers, credits and details for a record into one bundle."""

    def __init__(self, catalog: CatalogLookups):
        self._catalog = catalog

    async def enrich(
        self, record: MediaRecord, *, region: str, language: str
    ) -> EnrichmentBundle:
        """Run the three lookups concurrently; a failed lookup leaves its field empty."""

        providers, cast, details = await asyncio.gather(
            self._catalog.get_watch_providers(record.id, record.media_type, region),
            self._catalog.get_credits(record.id, record.media_type, language),
            self._catalog.get_details(record.id, record.media_type, language),
            return_exceptions=True,
        )

        bundle = EnrichmentBundle()
        if isinstance(providers, BaseException):
            logger.warning("Provider lookup failed for %s: %s", record.key, providers)
        else:
            bundle.providers = list(providers or [])
        if isinstance(cast, BaseException):
            logger.warning("Credits lookup failed for %s: %s", record.key, cast)
        else:
            bundle.cast = list(cast or [])
        if isinstance(details, BaseException):
            logger.warning("Details lookup failed for %s: %s", record.key, details)
        elif details is not None:
            bundle.details = details
        return bundle

    async def enrich_many(
        self, records: Sequence[MediaRecord], *, region: str, language: str
    ) -> dict[str, EnrichmentBundle]:
        """Enrich ``records`` concurrently, keyed by record identity."""

        bundles = await asyncio.gather(
            *(self.enrich(record, region=region, language=language) for record in records)
        )
        return {record.key: bundle for record, bundle in zip(records, bundles)}
