"""Resolve generated titles to catalog records."""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

from ..models import MediaRecord, allowed_media_types, records_from_hits
from ..utils import clean_title, collapse_whitespace, strip_leading_article

logger = logging.getLogger(__name__)

MIN_TERM_LENGTH = 2


class CatalogSearch(Protocol):
    async def search_multi(self, term: str, language: str) -> list[dict[str, Any]]:
        ...


def build_search_plan(title: str, languages: Sequence[str]) -> list[tuple[str, str]]:
    """Return the ordered ``(term, language)`` pairs tried for ``title``.

    Every language gets the cleaned title. The first two languages also get
    the title without its leading article, and the first language gets a
    whitespace-collapsed variant. Terms shorter than two characters are
    skipped.
    """

    cleaned = clean_title(title)
    plan: list[tuple[str, str]] = []
    for index, language in enumerate(languages):
        variants = [cleaned]
        if index < 2:
            variants.append(strip_leading_article(cleaned))
        if index == 0:
            variants.append(collapse_whitespace(cleaned))

        seen: set[str] = set()
        for term in variants:
            if len(term) < MIN_TERM_LENGTH or term in seen:
                continue
            seen.add(term)
            plan.append((term, language))
    return plan


class TitleResolver:
    """Find the single best catalog record for a generated title."""

    def __init__(self, catalog: CatalogSearch):
        self._catalog = catalog

    async def resolve(
        self,
        title: str,
        *,
        include_movies: bool,
        include_tv_shows: bool,
        languages: Sequence[str],
    ) -> MediaRecord | None:
        """Return the top-ranked match, or ``None`` when nothing fits."""

        allowed = allowed_media_types(include_movies, include_tv_shows)
        if not allowed:
            return None

        for term, language in build_search_plan(title, languages):
            hits = await self._catalog.search_multi(term, language)
            candidates = records_from_hits(hits, allowed)
            if not candidates:
                continue
            # max() keeps the first of equally scored hits, i.e. catalog order.
            best = max(candidates, key=lambda record: record.relevance)
            logger.debug(
                "Resolved %r via %r (%s) to %s", title, term, language, best.key
            )
            return best

        logger.debug("No catalog match for %r", title)
        return None
