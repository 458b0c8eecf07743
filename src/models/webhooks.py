from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel


WebhookEventStatus = Literal["pending", "processing", "completed", "failed"]


class WebhookEventListItem(BaseModel):
    id: str
    config_id: str | None = None
    platform: Literal["shopify", "woocommerce", "mercadolivre", "nuvemshop"]
    event_key: str
    event_type: str | None = None
    status: WebhookEventStatus
    error_message: str | None = None
    processed_at: datetime | None = None
    created_at: datetime | None = None


class WebhookEventDetailResponse(WebhookEventListItem):
    payload: dict[str, Any] | None = None


class WebhookIngestResponse(BaseModel):
    status: Literal["processed", "duplicate_ignored"]
    event_type: str
    event_key: str
    action: str | None = None
