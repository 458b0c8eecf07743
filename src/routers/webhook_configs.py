from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import ValidationError

from src.auth import AuthContext, require_permission
from src.auth.permissions import INTEGRATIONS_READ, INTEGRATIONS_WRITE
from src.config import settings
from src.db import supabase
from src.domain.platforms import PlatformStrategy, get_platform
from src.domain.provider_errors import provider_error_detail, provider_error_http_status
from src.models.webhook_configs import (
    WebhookConfigResponse,
    WebhookRegisterRequest,
    WebhookTestResponse,
)
from src.observability import incr_metric, log_event
from src.providers.http import ProviderError


router = APIRouter(prefix="/api/webhook-configs", tags=["webhook-configs"])
_CONFIG_FIELDS = (
    "id, platform, webhook_url, events, is_active, external_webhook_ids, last_triggered, created_at, updated_at"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _webhook_url(platform: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/api/webhooks/{platform}"


def _raise_provider_error(strategy: PlatformStrategy, operation: str, exc: ProviderError) -> None:
    raise HTTPException(
        status_code=provider_error_http_status(exc),
        detail=provider_error_detail(provider=strategy.platform.value, operation=operation, exc=exc),
    ) from exc


def _is_unique_violation(exc: Exception) -> bool:
    message = str(exc).lower()
    return "duplicate" in message or "unique" in message


def _rollback_registration(
    strategy: PlatformStrategy,
    credentials: Any,
    external_webhook_ids: list[str],
    req_id: str | None,
) -> None:
    # Vendor subscriptions without a stored config can never be deactivated.
    for webhook_id in external_webhook_ids:
        try:
            strategy.remove(credentials, [str(webhook_id)])
        except ProviderError as exc:
            log_event(
                "webhook_config_rollback_failed",
                level=logging.WARNING,
                request_id=req_id,
                platform=strategy.platform.value,
                external_webhook_id=webhook_id,
                category=exc.category,
                error=str(exc),
            )


def _get_config(config_id: str, auth: AuthContext, fields: str = "*") -> dict[str, Any]:
    result = (
        supabase.table("webhook_configs")
        .select(fields)
        .eq("id", config_id)
        .eq("user_id", auth.user_id)
        .execute()
    )
    if not result.data:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook config not found")
    return result.data[0]


@router.post("", response_model=WebhookConfigResponse, status_code=status.HTTP_201_CREATED)
async def register_webhook_config(
    data: WebhookRegisterRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission(INTEGRATIONS_WRITE)),
):
    req_id = _request_id(request)
    strategy = get_platform(data.platform)
    platform = strategy.platform.value

    existing = (
        supabase.table("webhook_configs")
        .select("id")
        .eq("user_id", auth.user_id)
        .eq("platform", platform)
        .eq("is_active", True)
        .execute()
    )
    if existing.data:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"An active {platform} webhook config already exists",
        )

    try:
        credentials = strategy.parse_credentials(data.credentials)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc

    webhook_url = _webhook_url(platform)
    try:
        registration = strategy.register(credentials, data.events, webhook_url)
    except ProviderError as exc:
        log_event(
            "webhook_config_register_failed",
            level=logging.WARNING,
            request_id=req_id,
            platform=platform,
            user_id=auth.user_id,
            category=exc.category,
            error=str(exc),
        )
        _raise_provider_error(strategy, "register_webhook", exc)

    now_iso = _now_iso()
    try:
        result = supabase.table("webhook_configs").insert(
            {
                "user_id": auth.user_id,
                "platform": platform,
                "webhook_url": webhook_url,
                "webhook_secret": registration.webhook_secret,
                "events": data.events,
                "credentials": data.credentials,
                "external_webhook_ids": registration.external_webhook_ids,
                "is_active": True,
                "created_at": now_iso,
                "updated_at": now_iso,
            }
        ).execute()
    except Exception as exc:
        log_event(
            "webhook_config_persist_failed",
            level=logging.ERROR,
            request_id=req_id,
            platform=platform,
            user_id=auth.user_id,
            error=str(exc),
        )
        _rollback_registration(strategy, credentials, registration.external_webhook_ids, req_id)
        incr_metric("webhook.registration.rolled_back", platform=platform)
        if _is_unique_violation(exc):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"An active {platform} webhook config already exists",
            ) from exc
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to persist webhook config",
        ) from exc
    incr_metric("webhook.registration.succeeded", platform=platform)
    log_event(
        "webhook_config_registered",
        request_id=req_id,
        platform=platform,
        user_id=auth.user_id,
        external_webhook_count=len(registration.external_webhook_ids),
    )
    return result.data[0]


@router.get("", response_model=list[WebhookConfigResponse])
async def list_webhook_configs(
    platform: str | None = None,
    include_inactive: bool = False,
    auth: AuthContext = Depends(require_permission(INTEGRATIONS_READ)),
):
    query = supabase.table("webhook_configs").select(_CONFIG_FIELDS).eq("user_id", auth.user_id)
    if platform:
        try:
            query = query.eq("platform", get_platform(platform).platform.value)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if not include_inactive:
        query = query.eq("is_active", True)
    rows = query.execute().data or []
    return sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)


@router.delete("/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook_config(
    config_id: str,
    request: Request,
    auth: AuthContext = Depends(require_permission(INTEGRATIONS_WRITE)),
):
    req_id = _request_id(request)
    config = _get_config(config_id, auth)
    strategy = get_platform(config["platform"])

    if config.get("is_active") and config.get("external_webhook_ids"):
        try:
            credentials = strategy.parse_credentials(config.get("credentials") or {})
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Stored credentials are invalid for this platform",
            ) from exc
        try:
            strategy.remove(credentials, [str(i) for i in config["external_webhook_ids"]])
        except ProviderError as exc:
            _raise_provider_error(strategy, "delete_webhook", exc)

    supabase.table("webhook_configs").update(
        {"is_active": False, "updated_at": _now_iso()}
    ).eq("id", config_id).eq("user_id", auth.user_id).execute()
    incr_metric("webhook.configs.deactivated", platform=strategy.platform.value)
    log_event(
        "webhook_config_deactivated",
        request_id=req_id,
        platform=strategy.platform.value,
        config_id=config_id,
        user_id=auth.user_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{config_id}/test", response_model=WebhookTestResponse)
async def test_webhook_config(
    config_id: str,
    request: Request,
    auth: AuthContext = Depends(require_permission(INTEGRATIONS_WRITE)),
):
    config = _get_config(config_id, auth, "id, webhook_url")
    ok = False
    try:
        with httpx.Client(timeout=settings.webhook_test_timeout_seconds) as client:
            response = client.post(
                config["webhook_url"],
                json={"test": True, "timestamp": _now_iso()},
            )
        ok = 200 <= response.status_code < 300
    except httpx.HTTPError as exc:
        log_event(
            "webhook_config_test_failed",
            level=logging.WARNING,
            request_id=_request_id(request),
            config_id=config_id,
            error=str(exc),
        )
    return WebhookTestResponse(config_id=config_id, ok=ok)
