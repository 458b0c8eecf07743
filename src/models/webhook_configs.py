from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


PlatformSlug = Literal["shopify", "woocommerce", "mercadolivre", "nuvemshop"]


class ShopifyCredentials(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    shop_url: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    api_key: str | None = None
    api_secret: str | None = None


class WooCommerceCredentials(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    store_url: str = Field(min_length=1)
    consumer_key: str = Field(min_length=1)
    consumer_secret: str = Field(min_length=1)


class MercadoLivreCredentials(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    user_id: str | None = None
    app_id: str | None = None
    app_secret: str | None = None

    @property
    def application_id(self) -> str | None:
        return self.app_id or self.user_id


class NuvemshopCredentials(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    store_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    app_id: str | None = None
    app_secret: str | None = None
    store_url: str | None = None


class WebhookRegisterRequest(BaseModel):
    platform: PlatformSlug
    events: list[str] = Field(min_length=1, max_length=20)
    credentials: dict[str, Any]


class WebhookConfigResponse(BaseModel):
    id: str
    platform: PlatformSlug
    webhook_url: str
    events: list[str]
    is_active: bool
    external_webhook_ids: list[str] = Field(default_factory=list)
    last_triggered: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WebhookTestResponse(BaseModel):
    config_id: str
    ok: bool
