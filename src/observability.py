from __future__ import annotations

import json
import logging
from collections import Counter
from threading import Lock
from typing import Any

import httpx


logger = logging.getLogger("order_tracker")

_metrics_lock = Lock()
_metrics_counter: Counter[str] = Counter()


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
    with _metrics_lock:
        _metrics_counter[key] += value


def metrics_snapshot() -> dict[str, int]:
    with _metrics_lock:
        return dict(_metrics_counter)


def parse_metric_key(key: str) -> tuple[str, dict[str, str]]:
    name, _, raw_labels = key.partition("|")
    labels: dict[str, str] = {}
    for pair in raw_labels.split(",") if raw_labels else []:
        label, _, value = pair.partition("=")
        labels[label] = value
    return name, labels


def metric_total(name: str, **labels: Any) -> int:
    """Sum a counter across every label combination matching ``labels``."""
    wanted = {k: str(_normalize(v)) for k, v in labels.items()}
    total = 0
    for key, value in metrics_snapshot().items():
        key_name, key_labels = parse_metric_key(key)
        if key_name != name:
            continue
        if all(key_labels.get(k) == v for k, v in wanted.items()):
            total += value
    return total


_WEBHOOK_OUTCOMES = {
    "webhook.events.received": "received",
    "webhook.events.processed": "processed",
    "webhook.events.duplicate": "duplicate",
    "webhook.events.failed": "failed",
    "webhook.events.rejected": "rejected",
    "webhook.signature.audit_failed": "signature_audit_failed",
}


def webhook_summary() -> dict[str, dict[str, int]]:
    """Per-platform webhook outcome counts from the in-process counters."""
    summary: dict[str, dict[str, int]] = {}
    for key, value in metrics_snapshot().items():
        name, labels = parse_metric_key(key)
        outcome = _WEBHOOK_OUTCOMES.get(name)
        platform = labels.get("platform")
        if not outcome or not platform:
            continue
        counts = summary.setdefault(platform, dict.fromkeys(_WEBHOOK_OUTCOMES.values(), 0))
        counts[outcome] += value
    return summary


def reset_metrics() -> None:
    with _metrics_lock:
        _metrics_counter.clear()


def _export_snapshot(
    *,
    payload: dict[str, Any],
    request_id: str | None,
    source: str,
    export_url: str,
    export_bearer_token: str | None,
    export_timeout_seconds: float,
) -> None:
    headers = {"Content-Type": "application/json"}
    if export_bearer_token:
        headers["Authorization"] = f"Bearer {export_bearer_token}"
    try:
        with httpx.Client(timeout=export_timeout_seconds) as client:
            response = client.post(export_url, headers=headers, json=payload)
    except Exception as exc:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            export_url=export_url,
            error=str(exc),
        )
        return
    if response.status_code >= 400:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            export_url=export_url,
            status_code=response.status_code,
            response_text=response.text[:200],
        )
        return
    log_event(
        "metrics_snapshot_exported",
        request_id=request_id,
        source=source,
        export_url=export_url,
        status_code=response.status_code,
    )


def persist_metrics_snapshot(
    *,
    supabase_client: Any,
    source: str,
    request_id: str | None = None,
    reset_after_persist: bool = False,
    export_url: str | None = None,
    export_bearer_token: str | None = None,
    export_timeout_seconds: float = 3.0,
) -> bool:
    snapshot = metrics_snapshot()
    payload = {
        "source": source,
        "request_id": request_id,
        "counters": snapshot,
    }
    try:
        supabase_client.table("observability_metric_snapshots").insert(payload).execute()
    except Exception as exc:
        log_event(
            "metrics_snapshot_persist_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return False

    if export_url:
        _export_snapshot(
            payload=payload,
            request_id=request_id,
            source=source,
            export_url=export_url,
            export_bearer_token=export_bearer_token,
            export_timeout_seconds=export_timeout_seconds,
        )

    log_event(
        "metrics_snapshot_persisted",
        request_id=request_id,
        source=source,
        counter_count=len(snapshot),
    )
    if reset_after_persist:
        reset_metrics()
    return True


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True))
