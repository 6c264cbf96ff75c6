# security.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt, JWTError

from settings import settings


# -----------------------
# Access tokens (JWT)
# -----------------------
def create_access_token(sub: str, minutes: Optional[int] = None) -> str:
    exp_minutes = minutes or settings.JWT_ACCESS_MINUTES
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=exp_minutes)).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        return {}


# -----------------------
# Rail webhook signature
# -----------------------
def verify_webhook_signature(signature: str | None) -> Optional[Dict[str, Any]]:
    """
    The rail signs each notification as an HS256 JWT with the shared webhook
    key. Returns the decoded claims, or None when missing or invalid.
    """
    if not signature or not settings.CAMPAY_WEBHOOK_KEY:
        return None
    try:
        return jwt.decode(signature, settings.CAMPAY_WEBHOOK_KEY, algorithms=["HS256"])
    except JWTError:
        return None
