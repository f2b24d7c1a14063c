"""
Auth dependencies for the admin / control surface.

Tokens are issued by the external auth service; the core only verifies
them and reads the `sub` and `role` claims.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .security import decode_token

bearer_scheme = HTTPBearer(auto_error=False)

# Roles allowed to read raw (decompressed) payload bodies
RAW_DATA_ROLES = {"admin", "auditor"}


@dataclass
class CurrentUser:
    id: str
    role: str
    hotel_id: Optional[str] = None

    @property
    def can_read_raw_payloads(self) -> bool:
        return self.role in RAW_DATA_ROLES


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    """Resolve the caller from a bearer JWT"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return CurrentUser(
        id=str(payload["sub"]),
        role=str(payload.get("role", "")),
        hotel_id=payload.get("hotel_id"),
    )


def require_roles(*roles: str):
    """Dependency factory: caller must hold one of the given roles"""
    allowed = set(roles)

    def _checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this operation",
            )
        return current_user

    return _checker


require_admin = require_roles("admin")
require_ops = require_roles("admin", "manager", "auditor")
require_amendment_reviewer = require_roles("admin", "manager", "front_desk")


def get_services(request: Request):
    """The ServiceContainer built in the app lifespan"""
    return request.app.state.services
