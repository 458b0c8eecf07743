from dataclasses import dataclass
from src.auth.permissions import normalize_role, permissions_for_role


@dataclass
class AuthContext:
    """Identity of the tenant behind a request. The Supabase user id is the tenant key."""
    user_id: str
    role: str = "user"
    email: str | None = None
    session_id: str | None = None
    permissions: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.role = normalize_role(self.role)
        if self.permissions:
            self.permissions = tuple(sorted(set(self.permissions)))
            return
        self.permissions = tuple(sorted(permissions_for_role(self.role)))
