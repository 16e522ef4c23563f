import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header

from agriops.core.config import get_settings
from agriops.core.errors import PermissionDenied, Unauthenticated

logger = logging.getLogger(__name__)

ADMIN = "admin"
AGENT = "agent"
FARMER = "farmer"
SHOP_MANAGER = "shop_manager"

ALLOWED_ROLES = {ADMIN, AGENT, FARMER, SHOP_MANAGER}


@dataclass(frozen=True)
class CurrentUser:
    """The authenticated principal performing an operation."""

    id: str
    role: str
    status: str = "active"
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


def _extract_role(payload: dict) -> Optional[str]:
    raw = payload.get("role")
    if raw is None:
        return None
    role = str(raw).strip().lower()
    if role not in ALLOWED_ROLES:
        return None
    return role


def decode_token(token: str) -> dict:
    settings = get_settings()
    if not settings.jwt_secret:
        raise RuntimeError("JWT_SECRET is not configured")

    audience = (settings.jwt_audience or "").strip()
    decode_kwargs = {}
    options = {"verify_aud": bool(audience)}
    if audience:
        decode_kwargs["audience"] = audience

    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options=options,
            **decode_kwargs,
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Access token has expired")
    except jwt.InvalidTokenError as exc:
        logger.debug("JWT verification failed: %s", exc)
        raise Unauthenticated("Invalid access token")


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated("Access token is required")

    token = authorization.split(" ", 1)[1].strip()
    payload = decode_token(token)

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Invalid access token")

    role = _extract_role(payload)
    if not role:
        raise PermissionDenied("Missing or unknown role")

    status = str(payload.get("status") or "active").lower()
    if status != "active":
        raise PermissionDenied("User account is inactive")

    return CurrentUser(id=str(user_id), role=role, status=status, email=payload.get("email"))


def require_roles(*roles: str):
    def _dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise PermissionDenied()
        return user

    return _dependency
