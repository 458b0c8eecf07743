from __future__ import annotations

from typing import Any

import httpx

from src.providers.http import ProviderError, parse_json
from src.providers.http import request_with_retry as _request_with_retry


class WooCommerceProviderError(ProviderError):
    """Provider-level exception for WooCommerce integration failures."""

    provider = "woocommerce"


def _build_base_url(store_url: str) -> str:
    base = store_url.strip().rstrip("/")
    if "://" not in base:
        base = f"https://{base}"
    return f"{base}/wp-json/wc/v3"


def _request_json(
    *,
    method: str,
    store_url: str,
    path: str,
    consumer_key: str,
    consumer_secret: str,
    json_payload: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
    timeout_seconds: float = 12.0,
    event: str | None = None,
    allow_not_found: bool = False,
) -> Any:
    if not consumer_key or not consumer_secret:
        raise WooCommerceProviderError("Missing WooCommerce consumer key or secret", event=event)
    if not store_url:
        raise WooCommerceProviderError("Missing WooCommerce store URL", event=event)

    url = f"{_build_base_url(store_url)}{path}"
    try:
        response = _request_with_retry(
            method=method,
            url=url,
            auth=(consumer_key, consumer_secret),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout_seconds=timeout_seconds,
            params=params,
            json_payload=json_payload,
        )
    except httpx.HTTPError as exc:
        raise WooCommerceProviderError(
            f"WooCommerce connectivity error: {exc}", connectivity=True, event=event
        ) from exc

    if response.status_code == 404 and allow_not_found:
        return {}
    if response.status_code in {401, 403}:
        raise WooCommerceProviderError(
            "Invalid WooCommerce credentials", status_code=response.status_code, event=event
        )
    if response.status_code >= 400:
        raise WooCommerceProviderError(
            f"WooCommerce API returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
            event=event,
        )
    return parse_json(response, WooCommerceProviderError, "WooCommerce")


def create_webhook(
    *,
    store_url: str,
    consumer_key: str,
    consumer_secret: str,
    topic: str,
    delivery_url: str,
    secret: str,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="POST",
        store_url=store_url,
        path="/webhooks",
        consumer_key=consumer_key,
        consumer_secret=consumer_secret,
        json_payload={
            "name": f"Tracky - {topic}",
            "topic": topic,
            "delivery_url": delivery_url,
            "status": "active",
            "secret": secret,
        },
        timeout_seconds=timeout_seconds,
        event=topic,
    )
    if not isinstance(data, dict) or data.get("id") is None:
        raise WooCommerceProviderError(f"Unexpected WooCommerce webhook response for {topic}", event=topic)
    return data


def delete_webhook(
    *,
    store_url: str,
    consumer_key: str,
    consumer_secret: str,
    webhook_id: str,
    timeout_seconds: float = 12.0,
) -> None:
    _request_json(
        method="DELETE",
        store_url=store_url,
        path=f"/webhooks/{webhook_id}",
        consumer_key=consumer_key,
        consumer_secret=consumer_secret,
        params={"force": "true"},
        timeout_seconds=timeout_seconds,
        allow_not_found=True,
    )
