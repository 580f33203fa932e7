"""Integration helpers for the OpenRouter API."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from ..config import Settings
from ..models import GenerationResult
from ..utils import extract_json_object, normalize_platform_name

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are FastFlix, an expert in cinema and television with encyclopedic knowledge "
    "of films and series from around the world. You always respond with a single JSON "
    "object that matches the documented schema and never include commentary outside JSON."
)

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "fr": "French",
    "it": "Italian",
    "ja": "Japanese",
    "es": "Spanish",
    "de": "German",
}

KNOWN_PLATFORMS: tuple[str, ...] = (
    "netflix",
    "disney",
    "disney+",
    "amazon",
    "prime",
    "primevideo",
    "hbo",
    "max",
    "apple",
    "appletv",
    "hulu",
    "paramount",
    "peacock",
    "canal+",
    "showtime",
    "starz",
    "crunchyroll",
)

RECOMMENDATION_REQUEST_TEMPLATE = """
A user asks you: "{query}".

Search strategy:
- For conceptual queries, think of iconic franchises, sequels, remakes and adaptations.
- For geographical or cultural queries, span origins and decades.
- For actor or director queries, cover the relevant filmography across career phases.
- Be generous and creative: include cult classics, international variants and thematic connections.

Rules:
1. Recommend up to {count} {content_types} matching the request. Use exact catalog titles.
2. {year_rule}
3. List any streaming platforms the user explicitly named (e.g. Netflix, Disney+). Leave the list empty otherwise.
4. Write a conversational message of 3-4 sentences that matches the user's tone and briefly explains your selection strategy without naming specific titles.
5. Write the message in {language_name} only, whatever language the request is written in.

Respond strictly with JSON following this structure:
{{
  "titles": ["Title"],
  "platforms": ["Platform"],
  "message": "short conversational message"
}}
"""


class OpenRouterClient:
    """Client responsible for generating candidate titles through OpenRouter."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

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
        """Ask the model for candidate titles and a conversational reply."""

        api_key = self._settings.openrouter_api_key
        if not api_key:
            raise RuntimeError("OpenRouter API key is required to generate recommendations")

        prompt = self._build_prompt(
            query,
            count=count,
            content_types=content_types,
            language=language,
            region=region,
            year_from=year_from,
            year_to=year_to,
        )
        payload = {
            "model": self._settings.openrouter_model,
            "temperature": 0.8,
            "max_output_tokens": self._estimate_token_budget(count),
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "X-Title": self._settings.app_name,
        }

        response = await self._client.post("/chat/completions", json=payload, headers=headers)
        if response.status_code >= 400:
            raise RuntimeError(response.text)

        data = response.json()
        choices = data.get("choices", [])
        if not choices:
            raise RuntimeError("Model returned no choices")
        content = choices[0].get("message", {}).get("content")
        if not isinstance(content, str):
            raise RuntimeError("Model response missing content")

        result = self._parse_result(extract_json_object(content))
        logger.info(
            "Model proposed %d titles and %d platforms",
            len(result.titles),
            len(result.detected_platforms),
        )
        return result

    def _build_prompt(
        self,
        query: str,
        *,
        count: int,
        content_types: Sequence[str],
        language: str,
        region: str,
        year_from: int | None,
        year_to: int | None,
    ) -> str:
        if year_from is not None and year_to is not None:
            year_rule = f"Only include titles released between {year_from} and {year_to}."
        elif year_from is not None:
            year_rule = f"Only include titles released in {year_from} or later."
        elif year_to is not None:
            year_rule = f"Only include titles released in {year_to} or earlier."
        else:
            year_rule = f"Favour titles a viewer in {region} can realistically stream."

        language_code = language.split("-")[0].lower()
        return RECOMMENDATION_REQUEST_TEMPLATE.format(
            query=query.strip(),
            count=count,
            content_types=" and ".join(content_types),
            year_rule=year_rule,
            language_name=LANGUAGE_NAMES.get(language_code, "English"),
        )

    @staticmethod
    def _estimate_token_budget(count: int) -> int:
        return max(1_000, min(4_000, 600 + int(count) * 40))

    @classmethod
    def _parse_result(cls, parsed: dict[str, Any]) -> GenerationResult:
        raw_titles = parsed.get("titles") or parsed.get("recommendations") or []
        titles: list[str] = []
        if isinstance(raw_titles, str):
            raw_titles = raw_titles.split(",")
        for entry in raw_titles if isinstance(raw_titles, list) else []:
            title = str(entry).strip() if entry is not None else ""
            if 0 < len(title) < 200:
                titles.append(title)

        raw_platforms = parsed.get("platforms") or []
        if isinstance(raw_platforms, str):
            raw_platforms = raw_platforms.split(",")
        platforms = [
            str(entry).strip()
            for entry in (raw_platforms if isinstance(raw_platforms, list) else [])
            if cls._is_known_platform(str(entry))
        ]

        message = parsed.get("message") or parsed.get("reply")
        reply = str(message).strip() if message else "Here are my recommendations for you!"
        return GenerationResult(titles=titles, reply=reply, detected_platforms=platforms)

    @staticmethod
    def _is_known_platform(value: str) -> bool:
        cleaned = value.strip()
        if not cleaned or cleaned.casefold() == "none":
            return False
        if len(cleaned) > 30 or ":" in cleaned or "." in cleaned:
            logger.debug("Ignoring invalid platform %r", cleaned)
            return False
        normalized = normalize_platform_name(cleaned)
        return any(
            known in normalized or normalized in known for known in KNOWN_PLATFORMS
        )
