from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.auth import AuthContext, require_permission
from src.auth.permissions import WEBHOOK_EVENTS_READ
from src.config import settings
from src.db import supabase
from src.domain.normalization import classify_event
from src.domain.platforms import Platform, PlatformStrategy, get_platform, mercadolivre_order_id
from src.domain.signatures import verify_mercadolivre_signature
from src.models.webhooks import (
    WebhookEventDetailResponse,
    WebhookEventListItem,
    WebhookIngestResponse,
)
from src.observability import incr_metric, log_event


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
_MERCADOLIVRE_SIGNATURE_MODES = {"permissive_audit", "enforce"}
_EVENT_LIST_FIELDS = (
    "id, config_id, platform, event_key, event_type, status, error_message, processed_at, created_at"
)


class DuplicateWebhookEvent(Exception):
    """Raised when a delivery with the same event key was already recorded."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _strategy_or_404(platform: str) -> PlatformStrategy:
    try:
        return get_platform(platform)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def _invalid_signature(*, platform: str, reason: str, request_id: str | None) -> HTTPException:
    incr_metric("webhook.events.rejected", platform=platform, reason=reason)
    log_event(
        "webhook_signature_rejected",
        level=logging.WARNING,
        request_id=request_id,
        platform=platform,
        reason=reason,
    )
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")


def _active_configs(platform: Platform) -> list[dict[str, Any]]:
    result = (
        supabase.table("webhook_configs")
        .select("*")
        .eq("platform", platform.value)
        .eq("is_active", True)
        .execute()
    )
    return result.data or []


def _config_secret(strategy: PlatformStrategy, config: dict[str, Any]) -> str | None:
    secret = config.get("webhook_secret")
    if not secret and strategy.platform == Platform.NUVEMSHOP:
        return settings.nuvemshop_webhook_secret
    return secret


def _signature_header(strategy: PlatformStrategy, request: Request) -> str | None:
    for header in strategy.signature_headers:
        value = request.headers.get(header)
        if value:
            return value
    return None


def _resolve_signed_config(
    *,
    strategy: PlatformStrategy,
    raw_body: bytes,
    request: Request,
    request_id: str | None,
) -> dict[str, Any]:
    """Return the active config whose secret signed this delivery, or raise 401."""
    platform = strategy.platform.value
    if strategy.platform == Platform.MERCADOLIVRE:
        return _resolve_mercadolivre_config(raw_body=raw_body, request=request, request_id=request_id)

    signature = _signature_header(strategy, request)
    if not signature:
        raise _invalid_signature(platform=platform, reason="missing_signature", request_id=request_id)
    configs = _active_configs(strategy.platform)
    if not configs:
        raise _invalid_signature(platform=platform, reason="config_not_found", request_id=request_id)
    for config in configs:
        if strategy.verify_signature(raw_body, signature, _config_secret(strategy, config)):
            return config
    raise _invalid_signature(platform=platform, reason="invalid_signature", request_id=request_id)


def _mercadolivre_data_id(request: Request, raw_body: bytes) -> str | None:
    data_id = request.query_params.get("data.id")
    if data_id:
        return data_id
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return mercadolivre_order_id(payload) if isinstance(payload, dict) else None


def _mercadolivre_seller_id(raw_body: bytes) -> str | None:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if isinstance(payload, dict) and payload.get("user_id") is not None:
        return str(payload["user_id"])
    return None


def _resolve_mercadolivre_config(
    *,
    raw_body: bytes,
    request: Request,
    request_id: str | None,
) -> dict[str, Any]:
    platform = Platform.MERCADOLIVRE.value
    raw_mode = str(settings.mercadolivre_signature_mode or "permissive_audit").strip().lower()
    mode = raw_mode if raw_mode in _MERCADOLIVRE_SIGNATURE_MODES else "permissive_audit"
    configs = _active_configs(Platform.MERCADOLIVRE)
    if not configs:
        raise _invalid_signature(platform=platform, reason="config_not_found", request_id=request_id)

    signature = request.headers.get("x-signature")
    x_request_id = request.headers.get("x-request-id")
    data_id = _mercadolivre_data_id(request, raw_body)
    for config in configs:
        if verify_mercadolivre_signature(
            signature_header=signature,
            request_id=x_request_id,
            data_id=data_id,
            secret=config.get("webhook_secret"),
        ):
            incr_metric("webhook.signature.verified", platform=platform, mode=mode)
            return config

    reason = "missing_signature" if not signature else "invalid_signature"
    if mode == "enforce":
        raise _invalid_signature(platform=platform, reason=reason, request_id=request_id)

    incr_metric("webhook.signature.audit_failed", platform=platform, reason=reason, mode=mode)
    log_event(
        "webhook_signature_audit_failed",
        level=logging.WARNING,
        request_id=request_id,
        platform=platform,
        reason=reason,
        mode=mode,
    )
    seller_id = _mercadolivre_seller_id(raw_body)
    if seller_id:
        for config in configs:
            credentials = config.get("credentials") or {}
            if str(credentials.get("user_id") or "") == seller_id:
                return config
    return configs[0]


def _extract_event_type(strategy: PlatformStrategy, request: Request, payload: dict[str, Any]) -> str:
    if strategy.topic_header:
        topic = request.headers.get(strategy.topic_header)
        if topic:
            return topic
    for key in ("event", "topic", "event_type", "type"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return "unknown"


def _compute_event_key(
    strategy: PlatformStrategy,
    request: Request,
    payload: dict[str, Any],
    raw_body: bytes,
) -> str:
    for header in strategy.delivery_id_headers:
        value = request.headers.get(header)
        if value:
            return value
    explicit = payload.get("_id") or payload.get("event_id")
    if explicit is not None:
        return str(explicit)
    digest = hashlib.sha256(raw_body).hexdigest()
    if strategy.notification_payloads:
        # Id-only notifications repeat byte for byte across real order changes.
        return f"{digest}:{uuid4().hex}"
    return digest


def _record_event(
    *,
    config: dict[str, Any],
    platform: str,
    event_key: str,
    event_type: str,
    payload: dict[str, Any],
) -> dict[str, Any]:
    try:
        result = supabase.table("webhook_events").insert(
            {
                "config_id": config.get("id"),
                "user_id": config.get("user_id"),
                "platform": platform,
                "event_key": event_key,
                "event_type": event_type,
                "payload": payload,
                "status": "processing",
                "error_message": None,
                "processed_at": None,
            }
        ).execute()
    except Exception as exc:
        if _is_unique_violation(exc):
            raise DuplicateWebhookEvent(event_key) from exc
        raise
    return result.data[0]


def _finish_event(
    event: dict[str, Any],
    *,
    event_status: str,
    error_message: str | None = None,
    request_id: str | None = None,
) -> None:
    try:
        supabase.table("webhook_events").update(
            {
                "status": event_status,
                "error_message": error_message,
                "processed_at": _now_iso(),
            }
        ).eq("id", event["id"]).execute()
    except Exception as exc:
        log_event(
            "webhook_event_status_update_failed",
            level=logging.ERROR,
            request_id=request_id,
            event_id=event.get("id"),
            target_status=event_status,
            error=str(exc),
        )


def _touch_config(config: dict[str, Any], request_id: str | None) -> None:
    try:
        supabase.table("webhook_configs").update({"last_triggered": _now_iso()}).eq(
            "id", config["id"]
        ).execute()
    except Exception as exc:
        log_event(
            "webhook_config_touch_failed",
            level=logging.WARNING,
            request_id=request_id,
            config_id=config.get("id"),
            error=str(exc),
        )


def _find_order(user_id: str, platform: str, external_id: str) -> dict[str, Any] | None:
    result = (
        supabase.table("orders")
        .select("id, status, tracking_code")
        .eq("user_id", user_id)
        .eq("platform", platform)
        .eq("external_id", external_id)
        .execute()
    )
    if not result.data:
        return None
    return result.data[0]


def _is_unique_violation(exc: Exception) -> bool:
    # PostgREST surfaces unique violations as a generic API error.
    message = str(exc).lower()
    return "duplicate" in message or "unique" in message


def _update_order(user_id: str, existing: dict[str, Any], order: dict[str, Any], now_iso: str) -> dict[str, Any]:
    # An update without tracking data keeps the code from an earlier fulfillment.
    update_payload = {
        key: value
        for key, value in order.items()
        if key != "created_at" and not (key in ("tracking_code", "carrier") and not value)
    }
    update_payload["updated_at"] = order.get("updated_at") or now_iso
    updated = supabase.table("orders").update(update_payload).eq("id", existing["id"]).eq(
        "user_id", user_id
    ).execute()
    return updated.data[0] if updated.data else {**existing, **update_payload}


def _upsert_order(user_id: str, order: dict[str, Any]) -> dict[str, Any]:
    now_iso = _now_iso()
    existing = _find_order(user_id, order["platform"], order["external_id"])
    if existing:
        return _update_order(user_id, existing, order, now_iso)

    insert_payload = dict(order)
    insert_payload["user_id"] = user_id
    insert_payload["created_at"] = order.get("created_at") or now_iso
    insert_payload["updated_at"] = order.get("updated_at") or now_iso
    try:
        created = supabase.table("orders").insert(insert_payload).execute()
    except Exception as exc:
        if not _is_unique_violation(exc):
            raise
        # A concurrent delivery for the same order inserted it first.
        existing = _find_order(user_id, order["platform"], order["external_id"])
        if not existing:
            raise
        return _update_order(user_id, existing, order, now_iso)
    return created.data[0] if created.data else insert_payload


def _mark_order_fulfilled(user_id: str, order: dict[str, Any]) -> dict[str, Any] | None:
    tracking_code = order.get("tracking_code")
    if not tracking_code:
        return None
    now_iso = _now_iso()
    existing = _find_order(user_id, order["platform"], order["external_id"])
    if existing:
        update_payload = {"tracking_code": tracking_code, "status": "in_transit", "updated_at": now_iso}
        if order.get("carrier"):
            update_payload["carrier"] = order["carrier"]
        updated = supabase.table("orders").update(update_payload).eq("id", existing["id"]).eq(
            "user_id", user_id
        ).execute()
        return updated.data[0] if updated.data else {**existing, **update_payload}
    return _upsert_order(user_id, {**order, "status": "in_transit", "updated_at": now_iso})


def _apply_event_to_orders(
    *,
    strategy: PlatformStrategy,
    config: dict[str, Any],
    event_type: str,
    payload: dict[str, Any],
    request_id: str | None,
) -> str:
    action = classify_event(event_type)
    if action is None:
        log_event(
            "webhook_event_unhandled",
            request_id=request_id,
            platform=strategy.platform.value,
            event_type=event_type,
        )
        return "ignored"

    order_payload = payload
    if strategy.expand_payload:
        order_payload = strategy.expand_payload(payload, config.get("credentials") or {})
    order = strategy.normalize(order_payload)
    user_id = config["user_id"]

    if action == "fulfilled":
        if _mark_order_fulfilled(user_id, order) is None:
            return "fulfilled_without_tracking"
        return "fulfilled"
    _upsert_order(user_id, order)
    return action


@router.post("/{platform}", response_model=WebhookIngestResponse)
async def ingest_marketplace_webhook(platform: str, request: Request):
    req_id = _request_id(request)
    strategy = _strategy_or_404(platform)
    slug = strategy.platform.value
    raw_body = await request.body()
    incr_metric("webhook.events.received", platform=slug)

    config = _resolve_signed_config(strategy=strategy, raw_body=raw_body, request=request, request_id=req_id)

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook payload must be a JSON object")

    event_type = _extract_event_type(strategy, request, payload)
    event_key = _compute_event_key(strategy, request, payload, raw_body)
    log_event(
        "webhook_received",
        request_id=req_id,
        platform=slug,
        event_type=event_type,
        event_key=event_key,
        config_id=config.get("id"),
    )

    try:
        event = _record_event(
            config=config,
            platform=slug,
            event_key=event_key,
            event_type=event_type,
            payload=payload,
        )
    except DuplicateWebhookEvent:
        incr_metric("webhook.events.duplicate", platform=slug)
        log_event(
            "webhook_duplicate_ignored",
            request_id=req_id,
            platform=slug,
            event_type=event_type,
            event_key=event_key,
        )
        return WebhookIngestResponse(status="duplicate_ignored", event_type=event_type, event_key=event_key)
    _touch_config(config, req_id)

    try:
        action = _apply_event_to_orders(
            strategy=strategy,
            config=config,
            event_type=event_type,
            payload=payload,
            request_id=req_id,
        )
    except Exception as exc:
        _finish_event(event, event_status="failed", error_message=str(exc), request_id=req_id)
        incr_metric("webhook.events.failed", platform=slug)
        log_event(
            "webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            platform=slug,
            event_type=event_type,
            event_key=event_key,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "type": "webhook_processing_failed",
                "platform": slug,
                "event_key": event_key,
                "message": str(exc),
            },
        ) from exc

    _finish_event(event, event_status="completed", request_id=req_id)
    incr_metric("webhook.events.processed", platform=slug, action=action)
    log_event(
        "webhook_processed",
        request_id=req_id,
        platform=slug,
        event_type=event_type,
        event_key=event_key,
        action=action,
    )
    return WebhookIngestResponse(status="processed", event_type=event_type, event_key=event_key, action=action)


@router.get("/events", response_model=list[WebhookEventListItem])
async def list_webhook_events(
    platform: str | None = None,
    event_status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    auth: AuthContext = Depends(require_permission(WEBHOOK_EVENTS_READ)),
):
    if platform:
        platform = _strategy_or_404(platform).platform.value
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)

    query = supabase.table("webhook_events").select(_EVENT_LIST_FIELDS).eq("user_id", auth.user_id)
    if platform:
        query = query.eq("platform", platform)
    if event_status:
        query = query.eq("status", event_status)
    rows = query.execute().data or []
    rows = sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)
    return rows[bounded_offset:bounded_offset + bounded_limit]


@router.get("/events/{event_id}", response_model=WebhookEventDetailResponse)
async def get_webhook_event(
    event_id: str,
    auth: AuthContext = Depends(require_permission(WEBHOOK_EVENTS_READ)),
):
    result = (
        supabase.table("webhook_events")
        .select(f"{_EVENT_LIST_FIELDS}, payload")
        .eq("id", event_id)
        .eq("user_id", auth.user_id)
        .execute()
    )
    if not result.data:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found")
    return result.data[0]
