"""Tests for the RevenueCat subscriber client."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import pytest

from app.config import Settings
from app.services.entitlements import EntitlementState, derive_entitlement_state
from app.services.revenuecat import RevenueCatClient

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


def build_client(
    handler: Callable[[httpx.Request], httpx.Response],
) -> tuple[RevenueCatClient, httpx.AsyncClient]:
    settings = Settings(_env_file=None, REVENUECAT_API_KEY="rc-secret")
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://rc.example.com/v1"
    )
    return RevenueCatClient(settings, http_client), http_client


def subscriber(
    *, expires: str, canceled: bool = False, purchase: str = "2024-05-01T00:00:00Z"
) -> dict[str, Any]:
    return {
        "entitlements": {
            "pro": {
                "expires_date": expires,
                "purchase_date": purchase,
                "product_identifier": "fastflix_monthly",
            }
        },
        "subscriptions": {
            "fastflix_monthly": {
                "unsubscribe_detected_at": "2024-05-10T00:00:00Z" if canceled else None
            }
        },
    }


def test_client_requires_api_key() -> None:
    with pytest.raises(ValueError):
        RevenueCatClient(Settings(_env_file=None, REVENUECAT_API_KEY=None), httpx.AsyncClient())


def test_renewing_subscription_is_active() -> None:
    info = RevenueCatClient.parse_subscriber(
        subscriber(expires="2024-06-01T00:00:00Z"), now=NOW
    )

    assert info.active_entitlements == ["pro"]
    assert derive_entitlement_state(info, NOW) is EntitlementState.ACTIVE


def test_canceled_subscription_is_in_grace_period_until_expiry() -> None:
    info = RevenueCatClient.parse_subscriber(
        subscriber(expires="2024-06-01T00:00:00Z", canceled=True), now=NOW
    )

    assert info.active_entitlements == []
    assert [entitlement.identifier for entitlement in info.all_entitlements] == ["pro"]
    assert derive_entitlement_state(info, NOW) is EntitlementState.GRACE_PERIOD


def test_lapsed_subscription_is_expired() -> None:
    info = RevenueCatClient.parse_subscriber(
        subscriber(expires="2024-05-15T00:00:00Z"), now=NOW
    )

    assert info.active_entitlements == []
    assert derive_entitlement_state(info, NOW) is EntitlementState.EXPIRED


def test_empty_subscriber_is_free() -> None:
    info = RevenueCatClient.parse_subscriber({}, now=NOW)

    assert derive_entitlement_state(info, NOW) is EntitlementState.FREE


@pytest.mark.anyio("asyncio")
async def test_get_entitlements_reads_subscriber() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200, json={"subscriber": subscriber(expires="2999-01-01T00:00:00Z")}
        )

    client, http_client = build_client(handler)
    async with http_client:
        info = await client.get_entitlements("user/42")

    assert info.active_entitlements == ["pro"]
    assert requests[0].url.raw_path == b"/v1/subscribers/user%2F42"
    assert requests[0].headers["Authorization"] == "Bearer rc-secret"


@pytest.mark.anyio("asyncio")
async def test_get_entitlements_raises_on_error_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    client, http_client = build_client(handler)
    async with http_client:
        with pytest.raises(RuntimeError, match="503"):
            await client.get_entitlements("user")


@pytest.mark.anyio("asyncio")
async def test_set_usage_attribute_posts_counter() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/v1/subscribers/user/attributes"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={})

    client, http_client = build_client(handler)
    async with http_client:
        await client.set_usage_attribute("user", "2024-05", 2)

    assert bodies == [
        {
            "attributes": {
                "monthly_prompt_count": {"value": "2"},
                "prompt_count_month": {"value": "2024-05"},
            }
        }
    ]
