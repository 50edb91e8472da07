from typing import Dict, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from app.auth.schemas import CurrentUser
from app.core.config import settings


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login-oauth")


def _parse_uuid(val) -> Optional[UUID]:
    if not val:
        return None
    try:
        return UUID(str(val))
    except ValueError:
        return None


async def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """Resolve the authenticated user and their permissions from the access token claims.
    Users and roles live in the identity service; its tokens carry the role's permission map.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise credentials_exception

    user_id = _parse_uuid(payload.get("user_id") or payload.get("sub"))
    tenant_id = _parse_uuid(payload.get("tenant_id"))
    role_name = payload.get("role")
    if not user_id or not tenant_id or not role_name:
        raise credentials_exception

    permissions: Dict[str, Dict[str, bool]] = payload.get("permissions") or {}
    if not isinstance(permissions, dict):
        raise credentials_exception

    return CurrentUser(
        id=user_id,
        tenant_id=tenant_id,
        role=role_name,
        permissions=permissions,
        academic_year_id=_parse_uuid(payload.get("academic_year_id")),
        academic_year_status=payload.get("academic_year_status"),
    )


CLOSED_ACADEMIC_YEAR_MESSAGE = "This academic year is closed and cannot be modified."


async def require_writable_academic_year(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Dependency: block fee configuration writes when the session's academic year is CLOSED."""
    if current_user.academic_year_status == "CLOSED":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=CLOSED_ACADEMIC_YEAR_MESSAGE,
        )
    return current_user
