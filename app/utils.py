"""Utility helpers for the FastFlix service."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any


JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
BARE_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)

# Leading articles/particles for the languages the catalog is searched in.
LEADING_ARTICLE_RE = re.compile(
    r"^(?:(?:the|an|a|le|la|les|un|une|des|il|lo|gli|i|uno|una|el|los|las"
    r"|der|die|das|ein|eine)\s+|l['’]\s*)",
    re.IGNORECASE,
)
WHITESPACE_RE = re.compile(r"\s+")
QUOTE_CHARS = "\"'“”‘’«»"


def extract_json_object(content: str) -> dict[str, Any]:
    """Extract and parse the first JSON object from the model response."""

    match = JSON_BLOCK_RE.search(content)
    if match:
        payload = match.group(1)
    else:
        match = BARE_JSON_RE.search(content)
        if not match:
            raise ValueError("No JSON object found in response")
        payload = match.group(0)

    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid JSON payload produced by the model") from exc


def clean_title(value: str) -> str:
    """Trim whitespace and wrapping quotes from a generated title."""

    cleaned = (value or "").strip()
    while len(cleaned) >= 2 and cleaned[0] in QUOTE_CHARS and cleaned[-1] in QUOTE_CHARS:
        cleaned = cleaned[1:-1].strip()
    return cleaned


def strip_leading_article(value: str) -> str:
    """Remove a single leading article such as ``The`` or ``L'``."""

    return LEADING_ARTICLE_RE.sub("", value, count=1).strip()


def collapse_whitespace(value: str) -> str:
    """Remove all internal whitespace from ``value``."""

    return WHITESPACE_RE.sub("", value)


def normalize_platform_name(value: str) -> str:
    """Return a comparable form of a streaming platform name."""

    return WHITESPACE_RE.sub("", (value or "").casefold())


def current_period_key(now: datetime | None = None) -> str:
    """Return the ``YYYY-MM`` usage period for ``now`` (UTC)."""

    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m")


def parse_year(value: Any) -> int | None:
    """Return the leading four-digit year of an ISO date string."""

    if not isinstance(value, str) or len(value) < 4:
        return None
    try:
        return int(value[:4])
    except ValueError:
        return None
