from __future__ import annotations

from typing import Final

ROLE_ALIASES: Final[dict[str, str]] = {
    "authenticated": "user",
    "member": "user",
    "super_admin": "admin",
}

CANONICAL_ROLES: Final[set[str]] = {"user", "admin"}

INTEGRATIONS_READ: Final[str] = "integrations.read"
INTEGRATIONS_WRITE: Final[str] = "integrations.write"
ORDERS_READ: Final[str] = "orders.read"
WEBHOOK_EVENTS_READ: Final[str] = "webhook_events.read"
OBSERVABILITY_MANAGE: Final[str] = "observability.manage"

ROLE_PERMISSION_BUNDLES: Final[dict[str, set[str]]] = {
    "user": {
        INTEGRATIONS_READ,
        INTEGRATIONS_WRITE,
        ORDERS_READ,
        WEBHOOK_EVENTS_READ,
    },
    "admin": {
        INTEGRATIONS_READ,
        INTEGRATIONS_WRITE,
        ORDERS_READ,
        WEBHOOK_EVENTS_READ,
        OBSERVABILITY_MANAGE,
    },
}


def normalize_role(role: str | None) -> str:
    raw = (role or "user").strip().lower()
    normalized = ROLE_ALIASES.get(raw, raw)
    if normalized not in CANONICAL_ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def permissions_for_role(role: str) -> set[str]:
    normalized = normalize_role(role)
    return set(ROLE_PERMISSION_BUNDLES[normalized])


def role_has_permission(role: str, permission_key: str) -> bool:
    return permission_key in permissions_for_role(role)


def is_admin_role(role: str) -> bool:
    return normalize_role(role) == "admin"
