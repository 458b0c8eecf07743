from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Literal


DigestEncoding = Literal["base64", "hex"]


def serialize_payload(payload: bytes | str | dict[str, Any] | list[Any]) -> bytes:
    """Bytes that were (or would be) signed by the sender.

    Raw bodies are used as-is. Parsed payloads are serialized compactly with
    unicode preserved, which matches what JavaScript senders produce with
    ``JSON.stringify``.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_signature(
    payload: bytes | str | dict[str, Any] | list[Any],
    secret: str,
    *,
    encoding: DigestEncoding = "base64",
) -> str:
    digest = hmac.new(secret.encode("utf-8"), serialize_payload(payload), hashlib.sha256)
    if encoding == "hex":
        return digest.hexdigest()
    return base64.b64encode(digest.digest()).decode("ascii")


def verify_signature(
    payload: bytes | str | dict[str, Any] | list[Any],
    signature: str | None,
    secret: str | None,
    *,
    encoding: DigestEncoding = "base64",
) -> bool:
    if not secret or not signature:
        return False
    expected = compute_signature(payload, secret, encoding=encoding)
    provided = signature.strip()
    if encoding == "hex":
        provided = provided.lower()
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def parse_mercadolivre_signature(header: str | None) -> tuple[str | None, str | None]:
    """Split an ``x-signature`` header of the form ``ts=<ts>,v1=<hash>``."""
    if not header:
        return None, None
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.partition("=")
        if sep:
            parts[key.strip().lower()] = value.strip()
    return parts.get("ts") or None, parts.get("v1") or None


def mercadolivre_manifest(*, data_id: str | None, request_id: str | None, ts: str) -> str:
    manifest = ""
    if data_id:
        # Mercado Livre lowercases alphanumeric ids before signing.
        manifest += f"id:{data_id.lower() if data_id.isalnum() else data_id};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"
    return manifest


def verify_mercadolivre_signature(
    *,
    signature_header: str | None,
    request_id: str | None,
    data_id: str | None,
    secret: str | None,
) -> bool:
    ts, provided = parse_mercadolivre_signature(signature_header)
    if not ts or not provided:
        return False
    manifest = mercadolivre_manifest(data_id=data_id, request_id=request_id, ts=ts)
    return verify_signature(manifest, provided, secret, encoding="hex")
