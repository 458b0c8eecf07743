"""Per-marketplace behavior keyed by :class:`Platform`.

Every supported marketplace contributes one :class:`PlatformStrategy` holding the
functions that differ between vendors: order normalization, status mapping,
signature verification, webhook registration and removal. Callers look up the
strategy once instead of branching on the platform string.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel

from src.config import settings
from src.domain.normalization import (
    OrderStatus,
    map_mercadolivre_status,
    map_nuvemshop_status,
    map_shopify_status,
    map_woocommerce_status,
    normalize_mercadolivre_order,
    normalize_nuvemshop_order,
    normalize_shopify_order,
    normalize_woocommerce_order,
)
from src.domain.signatures import DigestEncoding, verify_signature
from src.models.webhook_configs import (
    MercadoLivreCredentials,
    NuvemshopCredentials,
    ShopifyCredentials,
    WooCommerceCredentials,
)
from src.observability import incr_metric, log_event
from src.providers.http import ProviderError
from src.providers.mercadolivre import client as mercadolivre_client
from src.providers.nuvemshop import client as nuvemshop_client
from src.providers.shopify import client as shopify_client
from src.providers.woocommerce import client as woocommerce_client


class Platform(str, Enum):
    SHOPIFY = "shopify"
    WOOCOMMERCE = "woocommerce"
    MERCADOLIVRE = "mercadolivre"
    NUVEMSHOP = "nuvemshop"


@dataclass
class Registration:
    webhook_secret: str
    external_webhook_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PlatformStrategy:
    platform: Platform
    credentials_model: type[BaseModel]
    normalize: Callable[[dict[str, Any]], dict[str, Any]]
    map_status: Callable[[str | None], OrderStatus]
    register: Callable[[Any, list[str], str], Registration]
    remove: Callable[[Any, list[str]], None]
    signature_headers: tuple[str, ...] = ()
    signature_encoding: DigestEncoding = "base64"
    topic_header: str | None = None
    delivery_id_headers: tuple[str, ...] = ()
    expand_payload: Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]] | None = None
    # Deliveries name an order instead of carrying its state, so equal bodies are not redeliveries.
    notification_payloads: bool = False

    def verify_signature(self, payload: bytes | str | dict[str, Any], signature: str | None, secret: str | None) -> bool:
        return verify_signature(payload, signature, secret, encoding=self.signature_encoding)

    def parse_credentials(self, raw: dict[str, Any]) -> Any:
        return self.credentials_model.model_validate(raw)


def _create_each(
    *,
    platform: Platform,
    events: list[str],
    create: Callable[[str], dict[str, Any]],
    delete: Callable[[str], None],
) -> list[dict[str, Any]]:
    created: list[dict[str, Any]] = []
    for event in events:
        try:
            created.append(create(event))
        except ProviderError as exc:
            if exc.event is None:
                exc.event = event
            incr_metric("webhook.registration.failed", platform=platform.value, event=event)
            log_event(
                "webhook_registration_failed",
                level=logging.WARNING,
                platform=platform.value,
                event_topic=event,
                registered_before_failure=len(created),
                error=str(exc),
            )
            _rollback(platform=platform, created=created, delete=delete)
            raise
    return created


def _rollback(
    *,
    platform: Platform,
    created: list[dict[str, Any]],
    delete: Callable[[str], None],
) -> None:
    for webhook in created:
        webhook_id = str(webhook.get("id"))
        try:
            delete(webhook_id)
        except ProviderError as exc:
            log_event(
                "webhook_registration_rollback_failed",
                level=logging.ERROR,
                platform=platform.value,
                external_webhook_id=webhook_id,
                error=str(exc),
            )
            continue
        incr_metric("webhook.registration.rolled_back", platform=platform.value)


def _ids(created: list[dict[str, Any]]) -> list[str]:
    return [str(webhook["id"]) for webhook in created if webhook.get("id") is not None]


def _register_shopify(credentials: ShopifyCredentials, events: list[str], webhook_url: str) -> Registration:
    timeout = settings.provider_timeout_seconds
    created = _create_each(
        platform=Platform.SHOPIFY,
        events=events,
        create=lambda event: shopify_client.create_webhook(
            shop_url=credentials.shop_url,
            access_token=credentials.access_token,
            topic=event,
            address=webhook_url,
            timeout_seconds=timeout,
        ),
        delete=lambda webhook_id: shopify_client.delete_webhook(
            shop_url=credentials.shop_url,
            access_token=credentials.access_token,
            webhook_id=webhook_id,
            timeout_seconds=timeout,
        ),
    )
    returned_secret = str(created[0].get("secret") or "") if created else ""
    return Registration(
        webhook_secret=credentials.api_secret or returned_secret,
        external_webhook_ids=_ids(created),
    )


def _remove_shopify(credentials: ShopifyCredentials, external_webhook_ids: list[str]) -> None:
    for webhook_id in external_webhook_ids:
        shopify_client.delete_webhook(
            shop_url=credentials.shop_url,
            access_token=credentials.access_token,
            webhook_id=webhook_id,
            timeout_seconds=settings.provider_timeout_seconds,
        )


def _register_woocommerce(credentials: WooCommerceCredentials, events: list[str], webhook_url: str) -> Registration:
    timeout = settings.provider_timeout_seconds
    secret = secrets.token_urlsafe(32)
    created = _create_each(
        platform=Platform.WOOCOMMERCE,
        events=events,
        create=lambda event: woocommerce_client.create_webhook(
            store_url=credentials.store_url,
            consumer_key=credentials.consumer_key,
            consumer_secret=credentials.consumer_secret,
            topic=event,
            delivery_url=webhook_url,
            secret=secret,
            timeout_seconds=timeout,
        ),
        delete=lambda webhook_id: woocommerce_client.delete_webhook(
            store_url=credentials.store_url,
            consumer_key=credentials.consumer_key,
            consumer_secret=credentials.consumer_secret,
            webhook_id=webhook_id,
            timeout_seconds=timeout,
        ),
    )
    return Registration(webhook_secret=secret, external_webhook_ids=_ids(created))


def _remove_woocommerce(credentials: WooCommerceCredentials, external_webhook_ids: list[str]) -> None:
    for webhook_id in external_webhook_ids:
        woocommerce_client.delete_webhook(
            store_url=credentials.store_url,
            consumer_key=credentials.consumer_key,
            consumer_secret=credentials.consumer_secret,
            webhook_id=webhook_id,
            timeout_seconds=settings.provider_timeout_seconds,
        )


def _register_mercadolivre(credentials: MercadoLivreCredentials, events: list[str], webhook_url: str) -> Registration:
    # Mercado Livre takes every topic in one call, so there is nothing to roll back.
    try:
        data = mercadolivre_client.create_webhooks(
            application_id=credentials.application_id or "",
            access_token=credentials.access_token,
            url=webhook_url,
            events=events,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    except ProviderError as exc:
        incr_metric("webhook.registration.failed", platform=Platform.MERCADOLIVRE.value, event="batch")
        log_event(
            "webhook_registration_failed",
            level=logging.WARNING,
            platform=Platform.MERCADOLIVRE.value,
            event_topic=",".join(events),
            registered_before_failure=0,
            error=str(exc),
        )
        raise
    webhook_id = str(data.get("id") or "")
    return Registration(
        webhook_secret=credentials.app_secret or webhook_id,
        external_webhook_ids=[webhook_id] if webhook_id else [],
    )


def _remove_mercadolivre(credentials: MercadoLivreCredentials, external_webhook_ids: list[str]) -> None:
    for webhook_id in external_webhook_ids:
        mercadolivre_client.delete_webhook(
            application_id=credentials.application_id or "",
            access_token=credentials.access_token,
            webhook_id=webhook_id,
            timeout_seconds=settings.provider_timeout_seconds,
        )


def _register_nuvemshop(credentials: NuvemshopCredentials, events: list[str], webhook_url: str) -> Registration:
    timeout = settings.provider_timeout_seconds
    user_agent = settings.nuvemshop_user_agent
    created = _create_each(
        platform=Platform.NUVEMSHOP,
        events=events,
        create=lambda event: nuvemshop_client.create_webhook(
            store_id=credentials.store_id,
            access_token=credentials.access_token,
            event=event,
            url=webhook_url,
            user_agent=user_agent,
            timeout_seconds=timeout,
        ),
        delete=lambda webhook_id: nuvemshop_client.delete_webhook(
            store_id=credentials.store_id,
            access_token=credentials.access_token,
            webhook_id=webhook_id,
            user_agent=user_agent,
            timeout_seconds=timeout,
        ),
    )
    return Registration(
        webhook_secret=credentials.app_secret or settings.nuvemshop_webhook_secret or "",
        external_webhook_ids=_ids(created),
    )


def _remove_nuvemshop(credentials: NuvemshopCredentials, external_webhook_ids: list[str]) -> None:
    for webhook_id in external_webhook_ids:
        nuvemshop_client.delete_webhook(
            store_id=credentials.store_id,
            access_token=credentials.access_token,
            webhook_id=webhook_id,
            user_agent=settings.nuvemshop_user_agent,
            timeout_seconds=settings.provider_timeout_seconds,
        )


def mercadolivre_order_id(payload: dict[str, Any]) -> str | None:
    resource = payload.get("resource")
    if isinstance(resource, str) and resource.strip("/"):
        return resource.rstrip("/").rsplit("/", 1)[-1]
    if isinstance(payload.get("data"), dict) and payload["data"].get("id") is not None:
        return str(payload["data"]["id"])
    return None


def _expand_mercadolivre(payload: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]:
    # Notifications only carry "/orders/<id>"; full orders already have a status.
    if "status" in payload and payload.get("id") is not None:
        return payload
    order_id = mercadolivre_order_id(payload)
    if not order_id:
        raise ValueError("Mercado Livre notification is missing the order resource")
    parsed = MercadoLivreCredentials.model_validate(credentials)
    return mercadolivre_client.get_order(
        access_token=parsed.access_token,
        order_id=order_id,
        timeout_seconds=settings.provider_timeout_seconds,
    )


def _expand_nuvemshop(payload: dict[str, Any], credentials: dict[str, Any]) -> dict[str, Any]:
    # Nuvemshop sends {store_id, event, id}; the order itself must be fetched.
    if "shipping_status" in payload or "number" in payload:
        return payload
    order_id = payload.get("id") or payload.get("object_id")
    if order_id is None:
        raise ValueError("Nuvemshop notification is missing the order id")
    parsed = NuvemshopCredentials.model_validate(credentials)
    return nuvemshop_client.get_order(
        store_id=str(payload.get("store_id") or parsed.store_id),
        access_token=parsed.access_token,
        order_id=str(order_id),
        user_agent=settings.nuvemshop_user_agent,
        timeout_seconds=settings.provider_timeout_seconds,
    )


PLATFORMS: dict[Platform, PlatformStrategy] = {
    Platform.SHOPIFY: PlatformStrategy(
        platform=Platform.SHOPIFY,
        credentials_model=ShopifyCredentials,
        normalize=normalize_shopify_order,
        map_status=map_shopify_status,
        register=_register_shopify,
        remove=_remove_shopify,
        signature_headers=("X-Shopify-Hmac-Sha256",),
        topic_header="X-Shopify-Topic",
        delivery_id_headers=("X-Shopify-Webhook-Id",),
    ),
    Platform.WOOCOMMERCE: PlatformStrategy(
        platform=Platform.WOOCOMMERCE,
        credentials_model=WooCommerceCredentials,
        normalize=normalize_woocommerce_order,
        map_status=map_woocommerce_status,
        register=_register_woocommerce,
        remove=_remove_woocommerce,
        signature_headers=("X-WC-Webhook-Signature",),
        topic_header="X-WC-Webhook-Topic",
        delivery_id_headers=("X-WC-Webhook-Delivery-ID",),
    ),
    Platform.MERCADOLIVRE: PlatformStrategy(
        platform=Platform.MERCADOLIVRE,
        credentials_model=MercadoLivreCredentials,
        normalize=normalize_mercadolivre_order,
        map_status=map_mercadolivre_status,
        register=_register_mercadolivre,
        remove=_remove_mercadolivre,
        signature_headers=("x-signature",),
        signature_encoding="hex",
        delivery_id_headers=("x-request-id",),
        expand_payload=_expand_mercadolivre,
        notification_payloads=True,
    ),
    Platform.NUVEMSHOP: PlatformStrategy(
        platform=Platform.NUVEMSHOP,
        credentials_model=NuvemshopCredentials,
        normalize=normalize_nuvemshop_order,
        map_status=map_nuvemshop_status,
        register=_register_nuvemshop,
        remove=_remove_nuvemshop,
        signature_headers=("X-Linkedstore-HMAC-SHA256", "X-Nuvemshop-Signature"),
        signature_encoding="hex",
        expand_payload=_expand_nuvemshop,
        notification_payloads=True,
    ),
}


def get_platform(value: str | Platform) -> PlatformStrategy:
    try:
        platform = Platform(str(value.value if isinstance(value, Platform) else value).strip().lower())
    except ValueError as exc:
        raise ValueError(f"Platform {value} not supported") from exc
    return PLATFORMS[platform]


def map_status(platform: str | Platform, value: str | None) -> OrderStatus:
    return get_platform(platform).map_status(value)


def normalize_order(platform: str | Platform, payload: dict[str, Any]) -> dict[str, Any]:
    return get_platform(platform).normalize(payload)
