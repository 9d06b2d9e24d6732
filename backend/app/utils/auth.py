"""JWT helpers. Tokens are issued elsewhere; this service only verifies them."""

from datetime import timedelta
from typing import Optional

import jwt

from app.config import JWT_SECRET, JWT_ALGORITHM, logger
from app.utils.ids import utc_now


def create_access_token(user_id: str, role: str, expires_in: timedelta = timedelta(hours=12)) -> str:
    now = utc_now()
    payload = {
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Return the token claims, or None when the token is invalid or expired"""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired token")
        return None
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected invalid token: {e}")
        return None
    if not payload.get("sub"):
        return None
    return payload
