from __future__ import annotations

from typing import Any

import httpx

from src.providers.http import ProviderError, parse_json
from src.providers.http import request_with_retry as _request_with_retry


NUVEMSHOP_API_BASE = "https://api.nuvemshop.com.br/v1"


class NuvemshopProviderError(ProviderError):
    """Provider-level exception for Nuvemshop integration failures."""

    provider = "nuvemshop"


def _headers(access_token: str, user_agent: str) -> dict[str, str]:
    # Nuvemshop uses a non-standard "Authentication" header and requires a contact User-Agent.
    return {
        "Authentication": f"bearer {access_token}",
        "User-Agent": user_agent,
        "Content-Type": "application/json",
    }


def _request_json(
    *,
    method: str,
    store_id: str,
    path: str,
    access_token: str,
    user_agent: str,
    json_payload: dict[str, Any] | None = None,
    timeout_seconds: float = 12.0,
    event: str | None = None,
    allow_not_found: bool = False,
) -> Any:
    if not access_token:
        raise NuvemshopProviderError("Missing Nuvemshop access token", event=event)
    if not store_id:
        raise NuvemshopProviderError("Missing Nuvemshop store id", event=event)

    try:
        response = _request_with_retry(
            method=method,
            url=f"{NUVEMSHOP_API_BASE}/{store_id}{path}",
            headers=_headers(access_token, user_agent),
            timeout_seconds=timeout_seconds,
            json_payload=json_payload,
        )
    except httpx.HTTPError as exc:
        raise NuvemshopProviderError(
            f"Nuvemshop connectivity error: {exc}", connectivity=True, event=event
        ) from exc

    if response.status_code == 404 and allow_not_found:
        return {}
    if response.status_code in {401, 403}:
        raise NuvemshopProviderError(
            "Invalid Nuvemshop access token", status_code=response.status_code, event=event
        )
    if response.status_code >= 400:
        raise NuvemshopProviderError(
            f"Nuvemshop API returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
            event=event,
        )
    return parse_json(response, NuvemshopProviderError, "Nuvemshop")


def create_webhook(
    *,
    store_id: str,
    access_token: str,
    event: str,
    url: str,
    user_agent: str,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="POST",
        store_id=store_id,
        path="/webhooks",
        access_token=access_token,
        user_agent=user_agent,
        json_payload={"event": event, "url": url},
        timeout_seconds=timeout_seconds,
        event=event,
    )
    if not isinstance(data, dict) or data.get("id") is None:
        raise NuvemshopProviderError(f"Unexpected Nuvemshop webhook response for {event}", event=event)
    return data


def delete_webhook(
    *,
    store_id: str,
    access_token: str,
    webhook_id: str,
    user_agent: str,
    timeout_seconds: float = 12.0,
) -> None:
    _request_json(
        method="DELETE",
        store_id=store_id,
        path=f"/webhooks/{webhook_id}",
        access_token=access_token,
        user_agent=user_agent,
        timeout_seconds=timeout_seconds,
        allow_not_found=True,
    )


def get_order(
    *,
    store_id: str,
    access_token: str,
    order_id: str,
    user_agent: str,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="GET",
        store_id=store_id,
        path=f"/orders/{order_id}",
        access_token=access_token,
        user_agent=user_agent,
        timeout_seconds=timeout_seconds,
    )
    if not isinstance(data, dict):
        raise NuvemshopProviderError("Unexpected Nuvemshop order response type")
    return data
