from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from app.config import settings
from app.utils.logger import logger

security = HTTPBearer()

OWNER_ROLES = {"owner", "admin"}


class CurrentUser(BaseModel):
    """Caller resolved from the bearer token.

    Users live in the identity service; the token carries everything this
    backend needs. ``tenant_id`` falls back to ``sub`` for single-user tenants.
    """

    id: str
    tenant_id: str
    role: Optional[str] = None
    email: Optional[str] = None


def create_access_token(claims: dict, expires_delta: Optional[timedelta] = None) -> str:
    lifetime = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {**claims, "exp": datetime.now(timezone.utc) + lifetime}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.ALGORITHM)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired bearer token",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    try:
        claims = jwt.decode(credentials.credentials, settings.secret_key, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise _unauthorized()

    subject = claims.get("sub")
    if not subject:
        raise _unauthorized()

    return CurrentUser(
        id=str(subject),
        tenant_id=str(claims.get("tenant_id") or subject),
        role=claims.get("role"),
        email=claims.get("email"),
    )


async def owner_required(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if (current_user.role or "").lower() not in OWNER_ROLES:
        logger.warning(f"Non-owner user attempted credential change: user={current_user.id} tenant={current_user.tenant_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Business account owner access required"
        )
    return current_user
