from __future__ import annotations

from typing import Any

import httpx

from src.providers.http import ProviderError, parse_json
from src.providers.http import request_with_retry as _request_with_retry


MERCADOLIVRE_API_BASE = "https://api.mercadolibre.com"


class MercadoLivreProviderError(ProviderError):
    """Provider-level exception for Mercado Livre integration failures."""

    provider = "mercadolivre"


def _request_json(
    *,
    method: str,
    path: str,
    access_token: str,
    json_payload: dict[str, Any] | None = None,
    timeout_seconds: float = 12.0,
    event: str | None = None,
    allow_not_found: bool = False,
) -> Any:
    if not access_token:
        raise MercadoLivreProviderError("Missing Mercado Livre access token", event=event)

    try:
        response = _request_with_retry(
            method=method,
            url=f"{MERCADOLIVRE_API_BASE}{path}",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout_seconds=timeout_seconds,
            json_payload=json_payload,
        )
    except httpx.HTTPError as exc:
        raise MercadoLivreProviderError(
            f"Mercado Livre connectivity error: {exc}", connectivity=True, event=event
        ) from exc

    if response.status_code == 404 and allow_not_found:
        return {}
    if response.status_code in {401, 403}:
        raise MercadoLivreProviderError(
            "Invalid Mercado Livre access token", status_code=response.status_code, event=event
        )
    if response.status_code == 404:
        raise MercadoLivreProviderError(
            f"Mercado Livre resource not found: {path}", status_code=404, event=event
        )
    if response.status_code >= 400:
        raise MercadoLivreProviderError(
            f"Mercado Livre API returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
            event=event,
        )
    return parse_json(response, MercadoLivreProviderError, "Mercado Livre")


def create_webhooks(
    *,
    application_id: str,
    access_token: str,
    url: str,
    events: list[str],
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    if not application_id:
        raise MercadoLivreProviderError("Missing Mercado Livre application id")
    data = _request_json(
        method="POST",
        path=f"/applications/{application_id}/webhooks",
        access_token=access_token,
        json_payload={"url": url, "events": list(events)},
        timeout_seconds=timeout_seconds,
        event=",".join(events),
    )
    if not isinstance(data, dict):
        raise MercadoLivreProviderError("Unexpected Mercado Livre webhook response type")
    return data


def delete_webhook(
    *,
    application_id: str,
    access_token: str,
    webhook_id: str,
    timeout_seconds: float = 12.0,
) -> None:
    _request_json(
        method="DELETE",
        path=f"/applications/{application_id}/webhooks/{webhook_id}",
        access_token=access_token,
        timeout_seconds=timeout_seconds,
        allow_not_found=True,
    )


def get_order(*, access_token: str, order_id: str, timeout_seconds: float = 12.0) -> dict[str, Any]:
    data = _request_json(
        method="GET",
        path=f"/orders/{order_id}",
        access_token=access_token,
        timeout_seconds=timeout_seconds,
    )
    if not isinstance(data, dict):
        raise MercadoLivreProviderError("Unexpected Mercado Livre order response type")
    return data
