from fastapi import Depends, Header, HTTPException, status
from src.auth.context import AuthContext
from src.auth.jwt import decode_access_token, role_from_claims
from src.auth.permissions import is_admin_role, role_has_permission


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _context_from_token(token: str) -> AuthContext | None:
    payload = decode_access_token(token)
    if not payload:
        return None
    try:
        return AuthContext(
            user_id=payload["sub"],
            role=role_from_claims(payload),
            email=payload.get("email"),
            session_id=payload.get("session_id"),
        )
    except ValueError:
        return None


async def get_current_auth(authorization: str | None = Header(None)) -> AuthContext:
    """
    Supabase session auth. The JWT is verified locally with the project's JWT secret,
    so no round-trip to the auth server is needed.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    auth = _context_from_token(token)
    if not auth:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )
    return auth


async def require_admin(auth: AuthContext = Depends(get_current_auth)) -> AuthContext:
    """Authorization dependency for platform-operator endpoints."""
    if not is_admin_role(auth.role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return auth


def require_permission(permission_key: str):
    async def _require(auth: AuthContext = Depends(get_current_auth)) -> AuthContext:
        if permission_key not in auth.permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission required: {permission_key}",
            )
        return auth

    return _require


def has_permission(auth: AuthContext, permission_key: str) -> bool:
    if permission_key in auth.permissions:
        return True
    return role_has_permission(auth.role, permission_key)
