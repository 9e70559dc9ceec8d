"""
JWT utilities. Tokens are issued elsewhere; this service only needs to read
them (and mint them for tooling and tests).
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from servio.config import settings


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
    secret: Optional[str] = None,
) -> str:
    """Create an access token. ``data`` should carry ``sub`` and ``role``."""
    to_encode = data.copy()
    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, secret or settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_jwt(token: str, secret: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Decode and verify a JWT token.

    Returns the payload, or None if the token is invalid or expired.
    """
    try:
        return jwt.decode(token, secret or settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
