# ==== AUTHENTICATION ==== #

"""
Bearer-token authentication for the invoice anomaly API.

Callers present an HS256 JWT whose ``sub`` claim identifies the user. Tenant
membership is checked separately against the database by the routes.
"""

import datetime as dt
from typing import Dict, Any, Optional

import jwt
from fastapi import Header, HTTPException

from anomaly_engine.settings import settings


def require_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """
    Require an authenticated caller.

    Args:
        authorization (Optional[str]): Authorization header with Bearer token

    Returns:
        Dict[str, Any]: Decoded JWT payload with a non-empty ``sub`` claim

    Raises:
        HTTPException: 401 if the header is missing, malformed or invalid
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization.split(" ", 1)[1]

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")

    return payload


def create_access_token(user_id: str, expires_in_hours: int = 24) -> str:
    """Create a user JWT token.

    Args:
        user_id: User identifier stored in the ``sub`` claim
        expires_in_hours: Token expiration time in hours

    Returns:
        JWT token string
    """
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": user_id,
        "iat": now,
        "exp": now + dt.timedelta(hours=expires_in_hours)
    }

    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
