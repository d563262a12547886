"""
Merchant authentication.

Tokens are issued by the auth provider; this service only verifies them.
The ``sub`` claim is the merchant account every query is scoped to.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_merchant_token(merchant_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a merchant token (demo seeding and tests)."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    return jwt.encode(
        {"sub": merchant_id, "exp": expire, "type": "access"},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def get_current_merchant(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as e:
        logger.warning("Rejected merchant token: %s", e)
        raise _unauthorized("Could not validate credentials")

    merchant_id = payload.get("sub")
    if not merchant_id:
        raise _unauthorized("Token has no merchant")
    return merchant_id
