from __future__ import annotations

from typing import Any

import httpx

from src.providers.http import ProviderError, parse_json
from src.providers.http import request_with_retry as _request_with_retry


SHOPIFY_API_VERSION = "2023-10"


class ShopifyProviderError(ProviderError):
    """Provider-level exception for Shopify integration failures."""

    provider = "shopify"


def _base_url(shop_url: str) -> str:
    host = shop_url.strip().rstrip("/")
    for prefix in ("https://", "http://"):
        if host.startswith(prefix):
            host = host[len(prefix):]
    return f"https://{host}/admin/api/{SHOPIFY_API_VERSION}"


def _request_json(
    *,
    method: str,
    shop_url: str,
    path: str,
    access_token: str,
    json_payload: dict[str, Any] | None = None,
    timeout_seconds: float = 12.0,
    event: str | None = None,
    allow_not_found: bool = False,
) -> Any:
    if not access_token:
        raise ShopifyProviderError("Missing Shopify access token", event=event)
    if not shop_url:
        raise ShopifyProviderError("Missing Shopify shop URL", event=event)

    url = f"{_base_url(shop_url)}{path}"
    headers = {
        "X-Shopify-Access-Token": access_token,
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    try:
        response = _request_with_retry(
            method=method,
            url=url,
            headers=headers,
            timeout_seconds=timeout_seconds,
            json_payload=json_payload,
        )
    except httpx.HTTPError as exc:
        raise ShopifyProviderError(f"Shopify connectivity error: {exc}", connectivity=True, event=event) from exc

    if response.status_code == 404 and allow_not_found:
        return {}
    if response.status_code in {401, 403}:
        raise ShopifyProviderError("Invalid Shopify access token", status_code=response.status_code, event=event)
    if response.status_code >= 400:
        raise ShopifyProviderError(
            f"Shopify API returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
            event=event,
        )
    return parse_json(response, ShopifyProviderError, "Shopify")


def create_webhook(
    *,
    shop_url: str,
    access_token: str,
    topic: str,
    address: str,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="POST",
        shop_url=shop_url,
        path="/webhooks.json",
        access_token=access_token,
        json_payload={"webhook": {"topic": topic, "address": address, "format": "json"}},
        timeout_seconds=timeout_seconds,
        event=topic,
    )
    webhook = data.get("webhook") if isinstance(data, dict) else None
    if not isinstance(webhook, dict):
        raise ShopifyProviderError(f"Unexpected Shopify webhook response for {topic}", event=topic)
    return webhook


def delete_webhook(
    *,
    shop_url: str,
    access_token: str,
    webhook_id: str,
    timeout_seconds: float = 12.0,
) -> None:
    _request_json(
        method="DELETE",
        shop_url=shop_url,
        path=f"/webhooks/{webhook_id}.json",
        access_token=access_token,
        timeout_seconds=timeout_seconds,
        allow_not_found=True,
    )
