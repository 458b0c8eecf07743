from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from src.auth import AuthContext, require_admin
from src.config import settings
from src.db import supabase
from src.observability import metrics_snapshot, persist_metrics_snapshot, webhook_summary


router = APIRouter(prefix="/api/admin", tags=["admin"])


class MetricsSnapshotRecord(BaseModel):
    id: str
    source: str
    request_id: str | None = None
    counters: dict
    created_at: datetime


class MetricsSnapshotFlushRequest(BaseModel):
    source: str = "admin_flush"
    reset_after_persist: bool = False


class MetricsSnapshotFlushResponse(BaseModel):
    persisted: bool
    source: str
    counter_count: int


class WebhookSummaryResponse(BaseModel):
    platforms: dict[str, dict[str, int]]
    totals: dict[str, int]


@router.get("/observability/metrics-snapshots", response_model=list[MetricsSnapshotRecord])
async def list_metrics_snapshots(
    limit: int = 50,
    offset: int = 0,
    auth: AuthContext = Depends(require_admin),
):
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    result = (
        supabase.table("observability_metric_snapshots")
        .select("id, source, request_id, counters, created_at")
        .execute()
    )
    rows = result.data or []
    rows = sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)
    return rows[bounded_offset:bounded_offset + bounded_limit]


@router.post("/observability/metrics-snapshots/flush", response_model=MetricsSnapshotFlushResponse)
async def flush_metrics_snapshot(
    data: MetricsSnapshotFlushRequest,
    request: Request,
    auth: AuthContext = Depends(require_admin),
):
    counter_count = len(metrics_snapshot())
    persisted = persist_metrics_snapshot(
        supabase_client=supabase,
        source=data.source,
        request_id=getattr(request.state, "request_id", None),
        reset_after_persist=data.reset_after_persist,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return MetricsSnapshotFlushResponse(
        persisted=persisted,
        source=data.source,
        counter_count=counter_count,
    )


@router.get("/observability/webhook-summary", response_model=WebhookSummaryResponse)
async def get_webhook_summary(auth: AuthContext = Depends(require_admin)):
    platforms = webhook_summary()
    totals: dict[str, int] = {}
    for counts in platforms.values():
        for outcome, value in counts.items():
            totals[outcome] = totals.get(outcome, 0) + value
    return WebhookSummaryResponse(platforms=platforms, totals=totals)
