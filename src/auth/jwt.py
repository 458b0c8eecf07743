from datetime import datetime, timedelta, timezone
from uuid import uuid4
from jose import jwt, JWTError
from src.config import settings


def create_access_token(
    user_id: str,
    email: str | None = None,
    role: str = "user",
    expires_minutes: int = 60,
) -> str:
    """Create a token shaped like a Supabase session JWT (local tooling and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "aud": settings.jwt_audience,
        "role": "authenticated",
        "app_metadata": {"role": role},
        "session_id": str(uuid4()),
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.supabase_jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a Supabase JWT. Returns payload or None if invalid."""
    try:
        payload = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


def role_from_claims(payload: dict) -> str:
    app_metadata = payload.get("app_metadata")
    if isinstance(app_metadata, dict) and app_metadata.get("role"):
        return str(app_metadata["role"])
    return "user"
