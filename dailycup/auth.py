"""
Request-scoped identity: bearer JWT -> Principal.
"""
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings
from .errors import AuthError, ForbiddenError

ROLES = ("customer", "admin", "courier")

bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: Optional[int]
    role: str
    courier_id: Optional[int] = None

    @property
    def actor(self) -> str:
        if self.role == "courier" and self.courier_id is not None:
            return f"courier:{self.courier_id}"
        return f"{self.role}:{self.user_id}"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str, settings: Settings) -> dict[str, Any]:
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


def issue_token(settings: Settings, *, user_id: int | None, role: str, courier_id: int | None = None) -> str:
    claims: dict[str, Any] = {"sub": str(user_id) if user_id is not None else "", "role": role}
    if courier_id is not None:
        claims["courier_id"] = courier_id
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def principal_from_claims(claims: dict[str, Any]) -> Principal:
    role = claims.get("role")
    if role not in ROLES:
        raise AuthError("Invalid token role")
    sub = claims.get("sub")
    try:
        user_id = int(sub) if sub not in (None, "") else None
        courier_id = int(claims["courier_id"]) if claims.get("courier_id") is not None else None
    except (TypeError, ValueError):
        raise AuthError("Invalid token claims")
    if role == "courier" and courier_id is None:
        raise AuthError("Courier token without courier_id")
    return Principal(user_id=user_id, role=role, courier_id=courier_id)


def optional_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    settings: Settings = Depends(get_settings),
) -> Principal | None:
    if creds is None:
        return None
    try:
        claims = decode_token(creds.credentials, settings)
    except JWTError:
        raise AuthError("Invalid or expired token")
    return principal_from_claims(claims)


def current_principal(principal: Principal | None = Depends(optional_principal)) -> Principal:
    if principal is None:
        raise AuthError("Authentication required")
    return principal


def require_roles(*roles: str):
    def dep(principal: Principal = Depends(current_principal)) -> Principal:
        if principal.role not in roles:
            raise ForbiddenError("Insufficient role")
        return principal
    return dep
