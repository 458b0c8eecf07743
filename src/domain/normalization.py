from __future__ import annotations

from typing import Any, Literal


OrderStatus = Literal[
    "pending",
    "in_transit",
    "out_for_delivery",
    "delivered",
    "delayed",
    "failed",
    "returned",
]
OrderAction = Literal["create", "update", "fulfilled"]

SHOPIFY_STATUS_MAP: dict[str, OrderStatus] = {
    "unfulfilled": "pending",
    "partial": "in_transit",
    "fulfilled": "delivered",
    "null": "pending",
}

WOOCOMMERCE_STATUS_MAP: dict[str, OrderStatus] = {
    "pending": "pending",
    "processing": "in_transit",
    "completed": "delivered",
    "on-hold": "pending",
    "cancelled": "failed",
    "refunded": "returned",
    "failed": "failed",
}

MERCADOLIVRE_STATUS_MAP: dict[str, OrderStatus] = {
    "confirmed": "pending",
    "payment_required": "pending",
    "paid": "in_transit",
    "shipped": "in_transit",
    "delivered": "delivered",
    "cancelled": "failed",
}

NUVEMSHOP_STATUS_MAP: dict[str, OrderStatus] = {
    "unpacked": "pending",
    "packed": "pending",
    "ready_for_pickup": "pending",
    "shipped": "in_transit",
    "delivered": "delivered",
    "cancelled": "failed",
}

_EVENT_ACTIONS: dict[str, OrderAction] = {
    "orders/create": "create",
    "order.created": "create",
    "order/created": "create",
    "orders/updated": "update",
    "order.updated": "update",
    "order/updated": "update",
    "order/paid": "update",
    "order/cancelled": "update",
    "orders/paid": "update",
    "orders/cancelled": "update",
    "orders_v2": "update",
    "orders": "update",
    "orders/fulfilled": "fulfilled",
    "order.fulfilled": "fulfilled",
    "order/fulfilled": "fulfilled",
}


def _status_key(value: Any) -> str:
    if value is None:
        return "null"
    return str(value).strip().lower()


def map_shopify_status(value: str | None) -> OrderStatus:
    return SHOPIFY_STATUS_MAP.get(_status_key(value), "pending")


def map_woocommerce_status(value: str | None) -> OrderStatus:
    return WOOCOMMERCE_STATUS_MAP.get(_status_key(value), "pending")


def map_mercadolivre_status(value: str | None) -> OrderStatus:
    return MERCADOLIVRE_STATUS_MAP.get(_status_key(value), "pending")


def map_nuvemshop_status(value: str | None) -> OrderStatus:
    return NUVEMSHOP_STATUS_MAP.get(_status_key(value), "pending")


def classify_event(event_type: str | None) -> OrderAction | None:
    if not event_type:
        return None
    key = str(event_type).strip().lower()
    # WooCommerce action hooks arrive as "woocommerce_order_created" and friends.
    if key.startswith("woocommerce_order_"):
        key = "order." + key[len("woocommerce_order_"):]
    return _EVENT_ACTIONS.get(key)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def _full_name(first: Any, last: Any) -> str:
    return " ".join(part for part in (_text(first), _text(last)) if part)


def _destination(city: Any, region: Any) -> str:
    return ", ".join(part for part in (_text(city), _text(region)) if part)


def _money(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _external_id(payload: dict[str, Any]) -> str:
    order_id = payload.get("id")
    if order_id is None:
        raise ValueError("Order payload is missing id")
    return str(order_id)


def _meta_value(meta_data: Any, key: str) -> str:
    if not isinstance(meta_data, list):
        return ""
    for entry in meta_data:
        if isinstance(entry, dict) and entry.get("key") == key:
            return _text(entry.get("value"))
    return ""


def _shopify_fulfillment(payload: dict[str, Any]) -> dict[str, Any]:
    fulfillments = payload.get("fulfillments")
    if isinstance(fulfillments, list):
        for fulfillment in fulfillments:
            if isinstance(fulfillment, dict) and (
                fulfillment.get("tracking_number") or fulfillment.get("tracking_numbers")
            ):
                return fulfillment
    return {}


def _shopify_status_source(payload: dict[str, Any]) -> str | None:
    financial_status = payload.get("financial_status")
    if financial_status is not None and _status_key(financial_status) in SHOPIFY_STATUS_MAP:
        return financial_status
    return payload.get("fulfillment_status")


def normalize_shopify_order(payload: dict[str, Any]) -> dict[str, Any]:
    customer = _section(payload, "customer")
    shipping_address = _section(payload, "shipping_address")
    fulfillment = _shopify_fulfillment(payload)
    tracking_code = fulfillment.get("tracking_number")
    if not tracking_code and isinstance(fulfillment.get("tracking_numbers"), list) and fulfillment["tracking_numbers"]:
        tracking_code = fulfillment["tracking_numbers"][0]
    return {
        "external_id": _external_id(payload),
        "platform": "shopify",
        "tracking_code": _text(tracking_code),
        "customer_name": _full_name(customer.get("first_name"), customer.get("last_name")),
        "customer_email": _text(customer.get("email") or payload.get("email")),
        "customer_phone": _text(customer.get("phone") or shipping_address.get("phone")),
        "carrier": _text(fulfillment.get("tracking_company")),
        "status": map_shopify_status(_shopify_status_source(payload)),
        "destination": _destination(shipping_address.get("city"), shipping_address.get("province")),
        "order_value": _money(payload.get("total_price")),
        "created_at": payload.get("created_at"),
        "updated_at": payload.get("updated_at"),
    }


def normalize_woocommerce_order(payload: dict[str, Any]) -> dict[str, Any]:
    billing = _section(payload, "billing")
    shipping = _section(payload, "shipping")
    meta_data = payload.get("meta_data")
    return {
        "external_id": _external_id(payload),
        "platform": "woocommerce",
        "tracking_code": _meta_value(meta_data, "_tracking_number"),
        "customer_name": _full_name(billing.get("first_name"), billing.get("last_name")),
        "customer_email": _text(billing.get("email")),
        "customer_phone": _text(billing.get("phone")),
        "carrier": _meta_value(meta_data, "_tracking_provider"),
        "status": map_woocommerce_status(payload.get("status")),
        "destination": _destination(shipping.get("city"), shipping.get("state")),
        "order_value": _money(payload.get("total")),
        "created_at": payload.get("date_created"),
        "updated_at": payload.get("date_modified"),
    }


def normalize_mercadolivre_order(payload: dict[str, Any]) -> dict[str, Any]:
    buyer = _section(payload, "buyer")
    shipping = _section(payload, "shipping")
    buyer_name = _text(buyer.get("nickname")) or _full_name(buyer.get("first_name"), buyer.get("last_name"))
    return {
        "external_id": _external_id(payload),
        "platform": "mercadolivre",
        "tracking_code": _text(shipping.get("tracking_number")),
        "customer_name": buyer_name,
        "customer_email": _text(buyer.get("email")),
        "customer_phone": "",
        "carrier": _text(shipping.get("tracking_method")),
        "status": map_mercadolivre_status(payload.get("status")),
        "destination": "",
        "order_value": _money(payload.get("total_amount")),
        "created_at": payload.get("date_created"),
        "updated_at": payload.get("date_closed") or payload.get("date_created"),
    }


def normalize_nuvemshop_order(payload: dict[str, Any]) -> dict[str, Any]:
    shipping_address = _section(payload, "shipping_address")
    if shipping_address:
        destination = _destination(shipping_address.get("city"), shipping_address.get("province"))
    else:
        destination = _destination(payload.get("billing_city"), payload.get("billing_province"))
    tracking_code = _text(payload.get("shipping_tracking_number"))
    if not tracking_code and payload.get("number") is not None:
        tracking_code = f"NV{payload['number']}"
    return {
        "external_id": _external_id(payload),
        "platform": "nuvemshop",
        "tracking_code": tracking_code,
        "customer_name": _text(payload.get("contact_name") or payload.get("billing_name")),
        "customer_email": _text(payload.get("contact_email")),
        "customer_phone": _text(payload.get("contact_phone") or payload.get("billing_phone")),
        "carrier": _text(payload.get("shipping")) or "nuvemshop",
        "status": map_nuvemshop_status(payload.get("shipping_status")),
        "destination": destination,
        "order_value": _money(payload.get("total")),
        "created_at": payload.get("created_at"),
        "updated_at": payload.get("updated_at"),
    }
