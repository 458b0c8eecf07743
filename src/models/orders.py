from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class OrderResponse(BaseModel):
    id: str
    external_id: str | None = None
    platform: Literal["shopify", "woocommerce", "mercadolivre", "nuvemshop"] | None = None
    tracking_code: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    carrier: str | None = None
    status: Literal[
        "pending",
        "in_transit",
        "out_for_delivery",
        "delivered",
        "delayed",
        "failed",
        "returned",
    ]
    destination: str | None = None
    order_value: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
