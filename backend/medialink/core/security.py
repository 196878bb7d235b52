from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from medialink.core.config import Settings


@dataclass(frozen=True, slots=True)
class AuthenticatedPrincipal:
    """The caller on whose behalf a pipeline operation runs."""

    user_id: str
    is_admin: bool = False

    def can_manage(self, owner_id: str) -> bool:
        return self.is_admin or self.user_id == owner_id


def create_access_token(settings: Settings, subject: str, *, admin: bool = False, minutes: int = 30) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    to_encode = {"sub": subject, "type": "access", "admin": bool(admin), "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(settings: Settings, token: str) -> Optional[dict[str, Any]]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def principal_from_token(settings: Settings, token: str) -> AuthenticatedPrincipal | None:
    payload = decode_token(settings, token)
    if not payload or payload.get("type") != "access":
        return None
    subject = str(payload.get("sub") or "").strip()
    if not subject:
        return None
    return AuthenticatedPrincipal(user_id=subject, is_admin=bool(payload.get("admin")))
