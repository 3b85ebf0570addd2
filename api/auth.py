import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from config import Settings

from .deps import get_settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def create_access_token(settings: Settings, subject: str, role: str = "customer",
                        expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode = {"sub": subject, "role": role, "exp": expire}
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(settings: Settings, token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")


def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Security(security),
    settings: Settings = Depends(get_settings),
) -> dict:
    payload = decode_token(settings, credentials.credentials)
    if payload.get("role") != "admin":
        logger.warning(f"Non-admin token used on admin route (sub={payload.get('sub')})")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return payload


def get_current_customer(
    credentials: HTTPAuthorizationCredentials = Security(security),
    settings: Settings = Depends(get_settings),
) -> str:
    payload = decode_token(settings, credentials.credentials)
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return payload["sub"]


def get_optional_customer(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(optional_security),
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """The user id of a bearer customer, or None for a guest."""
    if credentials is None:
        return None
    return decode_token(settings, credentials.credentials).get("sub")
