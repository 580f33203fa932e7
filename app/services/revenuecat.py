"""Utilities for communicating with the RevenueCat subscriber API."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from ..config import Settings
from .entitlements import Entitlement, EntitlementInfo

logger = logging.getLogger(__name__)

PROMPT_COUNT_ATTRIBUTE = "monthly_prompt_count"
PROMPT_PERIOD_ATTRIBUTE = "prompt_count_month"


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RevenueCatClient:
    """Thin wrapper around the RevenueCat REST API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.revenuecat_api_key:
            raise ValueError(
                "RevenueCat API key is required when initialising RevenueCatClient"
            )
        self._settings = settings
        self._client = http_client

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.revenuecat_api_key}",
            "Content-Type": "application/json",
        }

    async def get_entitlements(self, user_id: str) -> EntitlementInfo:
        """Return the user's entitlements; raises ``RuntimeError`` on failure."""

        response = await self._client.get(
            f"/subscribers/{quote(user_id, safe='')}", headers=self._headers()
        )
        if response.status_code >= 400:
            raise RuntimeError(
                f"RevenueCat lookup failed with {response.status_code}: {response.text}"
            )
        subscriber = response.json().get("subscriber") or {}
        return self.parse_subscriber(subscriber, now=datetime.now(timezone.utc))

    @staticmethod
    def parse_subscriber(
        subscriber: dict[str, Any], *, now: datetime
    ) -> EntitlementInfo:
        """Split a subscriber payload into active and known entitlements.

        An entitlement is active while it has not expired and its subscription
        has not been canceled; a canceled one stays in the known list so its
        remaining paid window can still be honoured.
        """

        subscriptions = subscriber.get("subscriptions") or {}
        entitlements = subscriber.get("entitlements") or {}
        info = EntitlementInfo()
        for identifier, payload in entitlements.items():
            if not isinstance(payload, dict):
                continue
            expiration = _parse_timestamp(payload.get("expires_date"))
            purchase = _parse_timestamp(payload.get("purchase_date"))
            subscription = subscriptions.get(payload.get("product_identifier")) or {}
            canceled = bool(subscription.get("unsubscribe_detected_at"))

            info.all_entitlements.append(
                Entitlement(
                    identifier=str(identifier),
                    expiration_date=expiration,
                    latest_purchase_date=purchase,
                )
            )
            not_expired = expiration is None or expiration > now
            if purchase is not None and not_expired and not canceled:
                info.active_entitlements.append(str(identifier))
        return info

    async def set_usage_attribute(self, user_id: str, period_key: str, count: int) -> None:
        """Mirror the monthly usage counter onto subscriber attributes."""

        payload = {
            "attributes": {
                PROMPT_COUNT_ATTRIBUTE: {"value": str(count)},
                PROMPT_PERIOD_ATTRIBUTE: {"value": period_key},
            }
        }
        response = await self._client.post(
            f"/subscribers/{quote(user_id, safe='')}/attributes",
            json=payload,
            headers=self._headers(),
        )
        if response.status_code >= 400:
            raise RuntimeError(
                f"RevenueCat attribute update failed with {response.status_code}: "
                f"{response.text}"
            )
        logger.debug("Mirrored usage for %s: %s=%d", user_id, period_key, count)
